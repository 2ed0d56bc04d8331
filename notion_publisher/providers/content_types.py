"""Provider-agnostic content types for documents and their block trees."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class NodeKind(str, Enum):
    """Block types the renderer understands. Everything else is UNSUPPORTED."""

    PARAGRAPH = "paragraph"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    CODE = "code"
    IMAGE = "image"
    QUOTE = "quote"
    DIVIDER = "divider"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value: str | None) -> "NodeKind":
        try:
            return cls(value or "")
        except ValueError:
            return cls.UNSUPPORTED


class Annotation(str, Enum):
    BOLD = "bold"
    ITALIC = "italic"
    STRIKETHROUGH = "strikethrough"
    UNDERLINE = "underline"
    CODE = "code"


class MediaKind(str, Enum):
    COVER = "cover"
    INLINE = "inline"


@dataclass(frozen=True)
class TextRun:
    """A span of text with a uniform set of annotations."""

    text: str
    annotations: frozenset[Annotation] = frozenset()
    href: str | None = None


@dataclass(frozen=True)
class MediaDescriptor:
    url: str
    kind: MediaKind = MediaKind.INLINE


@dataclass(frozen=True)
class ContentNode:
    """One block in a document tree.

    ``children`` is filled by the tree fetcher when ``has_children`` is set
    and stays empty otherwise.
    """

    id: str
    kind: NodeKind
    text: tuple[TextRun, ...] = ()
    media: MediaDescriptor | None = None
    has_children: bool = False
    children: tuple[ContentNode, ...] = ()
    language: str | None = None  # code blocks
    caption: tuple[TextRun, ...] = ()  # images

    @property
    def is_list_item(self) -> bool:
        return self.kind in (NodeKind.BULLETED_LIST_ITEM, NodeKind.NUMBERED_LIST_ITEM)


@dataclass(frozen=True)
class Document:
    """A source page queued for publishing."""

    id: str
    title: str
    source_url: str
    author: str = ""
    summary: str = ""
    cover: MediaDescriptor | None = None
    blocks: tuple[ContentNode, ...] = ()
    synced: bool = False


class DocumentValidationError(Exception):
    """A source document lacks a field required for publishing. Never retried."""

    retriable = False

    def __init__(self, document_id: str, message: str):
        super().__init__(f"Document {document_id}: {message}")
        self.document_id = document_id


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a cursor-paginated listing."""

    results: list[T] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
