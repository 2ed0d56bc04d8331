"""Notion API client and block/page parsing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from notion_publisher.providers.content_types import (
    Annotation,
    ContentNode,
    Document,
    DocumentValidationError,
    MediaDescriptor,
    MediaKind,
    NodeKind,
    Page,
    TextRun,
)

logger = logging.getLogger(__name__)

NOTION_BASE_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
NOTION_MAX_PAGE_SIZE = 100
NOTION_TIMEOUT = 30.0


class NotionError(Exception):
    """Base exception for Notion API errors."""

    def __init__(self, message: str, status: int | None = None, retriable: bool = False):
        super().__init__(message)
        self.status = status
        self.retriable = retriable


class NotionAuthError(NotionError):
    """Authentication failed."""

    def __init__(self, message: str = "Invalid Notion API token"):
        super().__init__(message, status=401, retriable=False)


class NotionRateLimitError(NotionError):
    """Rate limited (429)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status=429, retriable=True)
        self.retry_after = retry_after


class DatabaseSchemaError(Exception):
    """The database lacks properties the sync reads or writes."""

    retriable = False

    def __init__(self, database_id: str, missing: list[str]):
        super().__init__(f"Database {database_id} is missing properties: {', '.join(missing)}")
        self.database_id = database_id
        self.missing = missing


@dataclass(frozen=True)
class PropertySchema:
    """Names of the database properties the pipeline reads and writes."""

    title: str = "title"
    author: str = "author"
    summary: str = "summary"
    cover: str = "cover"
    synced: str = "synced"
    type: str = "type"
    status: str = "status"


def build_unsynced_filter(
    schema: PropertySchema,
    type_value: str = "",
    status_value: str = "",
) -> dict[str, Any]:
    """Query filter for pages that still need publishing.

    Empty ``type_value``/``status_value`` drop the corresponding clause.
    """
    clauses: list[dict[str, Any]] = []
    if type_value:
        clauses.append({"property": schema.type, "select": {"equals": type_value}})
    if status_value:
        clauses.append({"property": schema.status, "select": {"equals": status_value}})
    clauses.append({"property": schema.synced, "checkbox": {"equals": False}})
    if len(clauses) == 1:
        return clauses[0]
    return {"and": clauses}


class NotionClient:
    """Async client for the Notion API (v1)."""

    def __init__(
        self,
        token: str,
        *,
        timeout: float = NOTION_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("Notion API token is required")
        self._client = httpx.AsyncClient(
            base_url=NOTION_BASE_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": NOTION_VERSION,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and classify failures.

        No retries here; call sites wrap this in a backoff policy.

        Raises:
            NotionAuthError: 401.
            NotionRateLimitError: 429 (retriable).
            NotionError: Timeouts, transport and 5xx errors (retriable),
                other 4xx errors (not retriable).
        """
        try:
            resp = await self._client.request(method, url, params=params, json=json)
        except httpx.TimeoutException as e:
            raise NotionError(f"Notion request timed out: {method} {url}", retriable=True) from e
        except httpx.TransportError as e:
            raise NotionError(f"Notion connection error: {e}", retriable=True) from e

        if resp.status_code == 401:
            raise NotionAuthError()

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                wait = float(retry_after) if retry_after else None
            except ValueError:
                wait = None
            raise NotionRateLimitError("Notion rate limit exceeded", retry_after=wait)

        if resp.status_code >= 400:
            try:
                message = resp.json().get("message", resp.text)
            except ValueError:
                message = resp.text
            raise NotionError(
                f"Notion API error {resp.status_code}: {message}",
                status=resp.status_code,
                retriable=resp.status_code >= 500,
            )

        return resp.json()

    async def query_database(
        self,
        database_id: str,
        *,
        filter: dict[str, Any] | None = None,
        page_size: int = NOTION_MAX_PAGE_SIZE,
        start_cursor: str | None = None,
    ) -> Page[dict[str, Any]]:
        """Fetch one page of database rows matching ``filter``."""
        body: dict[str, Any] = {"page_size": min(page_size, NOTION_MAX_PAGE_SIZE)}
        if filter:
            body["filter"] = filter
        if start_cursor:
            body["start_cursor"] = start_cursor
        data = await self._request("POST", f"/databases/{database_id}/query", json=body)
        return _to_page(data)

    async def list_block_children(
        self,
        block_id: str,
        *,
        page_size: int = NOTION_MAX_PAGE_SIZE,
        start_cursor: str | None = None,
    ) -> Page[dict[str, Any]]:
        """Fetch one page of a block's direct children."""
        params: dict[str, Any] = {"page_size": min(page_size, NOTION_MAX_PAGE_SIZE)}
        if start_cursor:
            params["start_cursor"] = start_cursor
        data = await self._request("GET", f"/blocks/{block_id}/children", params=params)
        return _to_page(data)

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/pages/{page_id}", json={"properties": properties})

    async def mark_synced(self, page_id: str, schema: PropertySchema) -> dict[str, Any]:
        """Set the checkpoint checkbox on a page."""
        return await self.update_page(page_id, {schema.synced: {"checkbox": True}})

    async def retrieve_database(self, database_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/databases/{database_id}")


def _to_page(data: dict[str, Any]) -> Page[dict[str, Any]]:
    return Page(
        results=list(data.get("results", [])),
        has_more=bool(data.get("has_more")),
        next_cursor=data.get("next_cursor"),
    )


# --- Parsing ---


def parse_rich_text(items: list[dict[str, Any]] | None) -> tuple[TextRun, ...]:
    """Convert a Notion rich_text array to TextRuns."""
    runs: list[TextRun] = []
    for item in items or []:
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content", "")
        flags = item.get("annotations") or {}
        annotations = frozenset(a for a in Annotation if flags.get(a.value))
        href = item.get("href") or ((item.get("text") or {}).get("link") or {}).get("url")
        runs.append(TextRun(text=text, annotations=annotations, href=href or None))
    return tuple(runs)


def _file_url(obj: dict[str, Any] | None) -> str | None:
    """URL of a Notion file object (hosted ``file`` or ``external``)."""
    if not obj:
        return None
    kind = obj.get("type")
    if kind in ("file", "external"):
        return (obj.get(kind) or {}).get("url")
    return (obj.get("file") or {}).get("url") or (obj.get("external") or {}).get("url")


def parse_block(raw: dict[str, Any]) -> ContentNode:
    """Convert a raw block description to a ContentNode without children."""
    kind = NodeKind.parse(raw.get("type"))
    body = raw.get(raw.get("type", ""), {}) or {}

    media = None
    language = None
    caption: tuple[TextRun, ...] = ()
    if kind == NodeKind.IMAGE:
        url = _file_url(body)
        media = MediaDescriptor(url=url, kind=MediaKind.INLINE) if url else None
        caption = parse_rich_text(body.get("caption"))
    elif kind == NodeKind.CODE:
        language = body.get("language")

    return ContentNode(
        id=raw["id"],
        kind=kind,
        text=parse_rich_text(body.get("rich_text")),
        media=media,
        has_children=bool(raw.get("has_children")),
        language=language,
        caption=caption,
    )


def _plain(prop: dict[str, Any] | None, key: str = "rich_text") -> str:
    if not prop:
        return ""
    return "".join(run.text for run in parse_rich_text(prop.get(key))).strip()


def parse_document(raw: dict[str, Any], schema: PropertySchema | None = None) -> Document:
    """Convert a database row to a Document (without blocks).

    Raises:
        DocumentValidationError: The title property is missing or empty.
    """
    schema = schema or PropertySchema()
    page_id = raw["id"]
    props = raw.get("properties") or {}

    title_prop = props.get(schema.title)
    if title_prop is None:
        raise DocumentValidationError(
            page_id,
            f"missing title property '{schema.title}' (available: {sorted(props)})",
        )
    title = _plain(title_prop, "title")
    if not title:
        raise DocumentValidationError(page_id, "empty title")

    cover_url = None
    files = (props.get(schema.cover) or {}).get("files") or []
    if files:
        cover_url = _file_url(files[0])
    if not cover_url:
        cover_url = _file_url(raw.get("cover"))

    synced_prop = props.get(schema.synced) or {}

    return Document(
        id=page_id,
        title=title,
        source_url=raw.get("url", ""),
        author=_plain(props.get(schema.author)) or "Anonymous",
        summary=_plain(props.get(schema.summary)),
        cover=MediaDescriptor(url=cover_url, kind=MediaKind.COVER) if cover_url else None,
        synced=bool(synced_prop.get("checkbox")),
    )
