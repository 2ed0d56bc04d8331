"""Shared fakes for the Notion source and raw block builders."""

import asyncio

import pytest

from notion_publisher.core.backoff import BackoffPolicy
from notion_publisher.providers.content_types import Page
from notion_publisher.providers.notion import NotionError
from notion_publisher.providers.wechat import WeChatError

NO_WAIT = BackoffPolicy(max_attempts=3, min_delay=0.0, max_delay=0.0)


def rich(text, href=None, **annotations):
    return {
        "type": "text",
        "plain_text": text,
        "href": href,
        "annotations": {
            "bold": False,
            "italic": False,
            "strikethrough": False,
            "underline": False,
            "code": False,
            "color": "default",
            **annotations,
        },
    }


def block(block_id, kind="paragraph", text="", has_children=False, **body):
    content = {"rich_text": [rich(text)] if text else [], **body}
    return {"object": "block", "id": block_id, "type": kind, "has_children": has_children, kind: content}


def image_block(block_id, url, caption=""):
    return {
        "object": "block",
        "id": block_id,
        "type": "image",
        "has_children": False,
        "image": {
            "type": "file",
            "file": {"url": url},
            "caption": [rich(caption)] if caption else [],
        },
    }


def notion_page(page_id, title="Hello", synced=False, cover_url=None, author="Ann", summary="Sum"):
    props = {
        "title": {"type": "title", "title": [rich(title)] if title else []},
        "author": {"type": "rich_text", "rich_text": [rich(author)] if author else []},
        "summary": {"type": "rich_text", "rich_text": [rich(summary)] if summary else []},
        "synced": {"type": "checkbox", "checkbox": synced},
        "cover": {"type": "files", "files": []},
    }
    if cover_url:
        props["cover"]["files"] = [{"name": "c.png", "type": "file", "file": {"url": cover_url}}]
    return {"object": "page", "id": page_id, "url": f"https://www.notion.so/{page_id}", "properties": props}


class FakeNotion:
    """In-memory stand-in for NotionClient.

    ``children`` maps block id -> list of pages (each a list of raw blocks).
    ``rows`` are database rows; query_database filters on the synced checkbox.
    """

    def __init__(self, children=None, rows=None, query_page_size=None):
        self.children = children or {}
        self.rows = rows or []
        self.query_page_size = query_page_size
        self.list_calls = []
        self.query_calls = []
        self.updates = []
        self.fail_listing = {}  # block id -> number of failures before success (-1: always)
        self.fail_update = set()
        self.list_delay = {}
        self.database_properties = {
            name: {"type": kind}
            for name, kind in [
                ("title", "title"), ("author", "rich_text"), ("summary", "rich_text"), ("cover", "files"),
                ("synced", "checkbox"), ("type", "select"), ("status", "select"),
            ]
        }
        self.database_calls = []

    async def list_block_children(self, block_id, *, page_size=100, start_cursor=None):
        self.list_calls.append((block_id, start_cursor))
        remaining = self.fail_listing.get(block_id, 0)
        if remaining:
            if remaining > 0:
                self.fail_listing[block_id] = remaining - 1
            raise NotionError(f"listing {block_id} failed", status=503, retriable=True)
        if block_id in self.list_delay:
            await asyncio.sleep(self.list_delay[block_id])
        pages = self.children.get(block_id, [[]])
        index = int(start_cursor or 0)
        has_more = index + 1 < len(pages)
        return Page(
            results=list(pages[index]),
            has_more=has_more,
            next_cursor=str(index + 1) if has_more else None,
        )

    async def retrieve_database(self, database_id):
        self.database_calls.append(database_id)
        return {"id": database_id, "properties": self.database_properties}

    async def query_database(self, database_id, *, filter=None, page_size=100, start_cursor=None):
        self.query_calls.append((database_id, filter, start_cursor))
        # Cursor continues the listing as it was when the query started
        if start_cursor is None:
            self._snapshot = [r for r in self.rows if not r["properties"]["synced"]["checkbox"]]
        pending = self._snapshot
        size = self.query_page_size or page_size
        start = int(start_cursor or 0)
        chunk = pending[start:start + size]
        has_more = start + size < len(pending)
        return Page(results=chunk, has_more=has_more, next_cursor=str(start + size) if has_more else None)

    async def mark_synced(self, page_id, schema):
        if page_id in self.fail_update:
            raise NotionError("update failed", status=400, retriable=False)
        self.updates.append(page_id)
        for row in self.rows:
            if row["id"] == page_id:
                row["properties"][schema.synced]["checkbox"] = True
        return {"id": page_id}


@pytest.fixture
def no_wait():
    return NO_WAIT


class FakeWeChat:
    """In-memory stand-in for WeChatClient."""

    def __init__(self):
        self.uploads = []
        self.materials = []
        self.drafts = []
        self.published = []
        self.fail_uploads = 0
        self.fail_drafts = 0
        self.reject_titles = set()

    async def upload_image(self, content, filename, content_type):
        if self.fail_uploads:
            self.fail_uploads -= 1
            raise WeChatError("system busy", errcode=-1, retriable=True)
        self.uploads.append((filename, content_type, len(content)))
        return f"https://mmbiz.qpic.cn/img/{len(self.uploads)}"

    async def add_image_material(self, content, filename, content_type):
        self.materials.append((filename, content_type, len(content)))
        return f"THUMB_{len(self.materials)}"

    async def add_draft(self, articles):
        if self.fail_drafts:
            self.fail_drafts -= 1
            raise WeChatError("system busy", errcode=-1, retriable=True)
        for article in articles:
            if article["title"] in self.reject_titles:
                raise WeChatError("invalid content", errcode=45166, retriable=False)
        self.drafts.append(articles)
        return f"DRAFT_{len(self.drafts)}"

    async def submit_publish(self, media_id):
        self.published.append(media_id)
        return f"PUB_{len(self.published)}"
