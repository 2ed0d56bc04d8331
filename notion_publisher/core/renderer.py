"""Render block trees to WeChat article HTML."""

from __future__ import annotations

import html
import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from notion_publisher.core.tree_fetcher import FetchError
from notion_publisher.providers.content_types import (
    Annotation,
    ContentNode,
    MediaKind,
    NodeKind,
    TextRun,
)

if TYPE_CHECKING:
    from notion_publisher.core.media_relay import MediaRelay

logger = logging.getLogger(__name__)


class ListState(str, Enum):
    NONE = "none"
    BULLETED = "bulleted"
    NUMBERED = "numbered"


LIST_TAGS = {ListState.BULLETED: "ul", ListState.NUMBERED: "ol"}

# Outermost first
ANNOTATION_TAGS: tuple[tuple[Annotation, str], ...] = (
    (Annotation.BOLD, "strong"),
    (Annotation.ITALIC, "em"),
    (Annotation.STRIKETHROUGH, "del"),
    (Annotation.UNDERLINE, "u"),
    (Annotation.CODE, "code"),
)

TEXT_TAGS = {
    NodeKind.PARAGRAPH: "p",
    NodeKind.HEADING_1: "h1",
    NodeKind.HEADING_2: "h2",
    NodeKind.HEADING_3: "h3",
    NodeKind.BULLETED_LIST_ITEM: "li",
    NodeKind.NUMBERED_LIST_ITEM: "li",
    NodeKind.QUOTE: "blockquote",
}

INDENT_OPEN = '<section style="padding-left: 2em">'
INDENT_CLOSE = "</section>"


def list_state_for(kind: NodeKind) -> ListState:
    if kind == NodeKind.BULLETED_LIST_ITEM:
        return ListState.BULLETED
    if kind == NodeKind.NUMBERED_LIST_ITEM:
        return ListState.NUMBERED
    return ListState.NONE


def transition(state: ListState, kind: NodeKind) -> tuple[ListState, str]:
    """List-grouping reducer: the markup to emit before a node of ``kind``."""
    target = list_state_for(kind)
    if target == state:
        return state, ""
    markup = ""
    if state != ListState.NONE:
        markup += f"</{LIST_TAGS[state]}>"
    if target != ListState.NONE:
        markup += f"<{LIST_TAGS[target]}>"
    return target, markup


def close_list(state: ListState) -> str:
    return f"</{LIST_TAGS[state]}>" if state != ListState.NONE else ""


def run_to_markup(run: TextRun) -> str:
    out = html.escape(run.text, quote=False).replace("\n", "<br/>")
    for annotation, tag in reversed(ANNOTATION_TAGS):
        if annotation in run.annotations:
            out = f"<{tag}>{out}</{tag}>"
    if run.href:
        out = f'<a href="{html.escape(run.href, quote=True)}">{out}</a>'
    return out


def rich_text_to_markup(runs: Iterable[TextRun]) -> str:
    return "".join(run_to_markup(run) for run in runs)


class ContentRenderer:
    """Turns ContentNodes into HTML, substituting relayed image references."""

    def __init__(self, relay: "MediaRelay") -> None:
        self._relay = relay

    async def render(self, nodes: Iterable[ContentNode]) -> str:
        """Render a sequence of sibling nodes.

        A node whose own markup fails (image relay, bad data) renders as
        empty; FetchError is never swallowed.
        """
        parts: list[str] = []
        state = ListState.NONE

        for node in nodes:
            state, markup = transition(state, node.kind)
            parts.append(markup)

            try:
                markup = await self.render_node(node)
            except FetchError:
                raise
            except Exception as e:
                logger.warning(f"Rendering block {node.id} ({node.kind.value}) failed, skipping: {e}")
                markup = ""

            if node.children:
                nested = INDENT_OPEN + await self.render(node.children) + INDENT_CLOSE
                if node.is_list_item:
                    # Nested content stays inside the item's <li>
                    body = markup[: -len("</li>")] if markup.endswith("</li>") else "<li>" + markup
                    markup = body + nested + "</li>"
                else:
                    markup += nested
            parts.append(markup)

        parts.append(close_list(state))
        return "".join(parts)

    async def render_node(self, node: ContentNode) -> str:
        """Markup for the node itself, without its children."""
        if node.kind in TEXT_TAGS:
            tag = TEXT_TAGS[node.kind]
            return f"<{tag}>{rich_text_to_markup(node.text)}</{tag}>"

        if node.kind == NodeKind.CODE:
            code = html.escape("".join(run.text for run in node.text), quote=False)
            if node.language:
                return f'<pre><code class="language-{html.escape(node.language)}">{code}</code></pre>'
            return f"<pre><code>{code}</code></pre>"

        if node.kind == NodeKind.IMAGE:
            return await self._render_image(node)

        if node.kind == NodeKind.DIVIDER:
            return "<hr/>"

        return ""

    async def _render_image(self, node: ContentNode) -> str:
        if node.media is None:
            return ""
        reference = await self._relay.relay(node.media.url, MediaKind.INLINE)
        if not reference:
            return ""
        img = f'<img src="{html.escape(reference, quote=True)}"/>'
        if node.caption:
            return f"<figure>{img}<figcaption>{rich_text_to_markup(node.caption)}</figcaption></figure>"
        return img
