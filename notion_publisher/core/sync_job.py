"""Sync job: publish unsynced Notion pages to WeChat.

Provides:
- SyncRun and SyncRunStore for run history with DB persistence
- SyncOrchestrator.run() which pages through unsynced documents and
  publishes them one at a time, isolating per-document failures
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from notion_publisher.core.backoff import BackoffPolicy, RetryState, execute
from notion_publisher.providers.content_types import Document, DocumentValidationError, MediaKind
from notion_publisher.providers.notion import (
    DatabaseSchemaError,
    PropertySchema,
    build_unsynced_filter,
    parse_document,
)

if TYPE_CHECKING:
    from notion_publisher.core.media_relay import MediaRelay
    from notion_publisher.core.renderer import ContentRenderer
    from notion_publisher.core.storage import DB
    from notion_publisher.core.tree_fetcher import TreeFetcher
    from notion_publisher.providers.notion import NotionClient
    from notion_publisher.providers.wechat import WeChatClient

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Status of a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncRun:
    """Tracks state of one sync run."""

    id: str
    status: SyncStatus
    trigger: str = "manual"
    pages_listed: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "trigger": self.trigger,
            "pages_listed": self.pages_listed,
            "items_processed": self.items_processed,
            "items_skipped": self.items_skipped,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncRun:
        """Create SyncRun from database row."""
        return cls(
            id=row["id"],
            status=SyncStatus(row["status"]),
            trigger=row["triggered_by"],
            pages_listed=row["pages_listed"],
            items_processed=row["items_processed"],
            items_skipped=row["items_skipped"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            error=row["error"],
        )


class SyncRunStore:
    """Run history persisted to the sync_runs table. Thread-safe."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def create(self, trigger: str = "manual") -> SyncRun:
        run = SyncRun(id=str(uuid.uuid4()), status=SyncStatus.RUNNING, trigger=trigger)
        with self._lock:
            self._persist(run)
        return run

    def _persist(self, run: SyncRun) -> None:
        """Save or update run in DB. Must be called within lock."""
        self._conn.execute(
            """
            INSERT INTO sync_runs (
                id, status, triggered_by, pages_listed, items_processed, items_skipped,
                started_at, finished_at, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                pages_listed = excluded.pages_listed,
                items_processed = excluded.items_processed,
                items_skipped = excluded.items_skipped,
                finished_at = excluded.finished_at,
                error = excluded.error
            """,
            (
                run.id,
                run.status.value,
                run.trigger,
                run.pages_listed,
                run.items_processed,
                run.items_skipped,
                run.started_at.isoformat(),
                run.finished_at.isoformat() if run.finished_at else None,
                run.error,
            ),
        )
        self._conn.commit()

    def update(self, run: SyncRun) -> None:
        with self._lock:
            self._persist(run)

    def finish(self, run: SyncRun, error: str | None = None) -> None:
        run.finished_at = datetime.now(timezone.utc)
        run.status = SyncStatus.FAILED if error else SyncStatus.COMPLETED
        run.error = error
        self.update(run)

    def get(self, run_id: str) -> SyncRun | None:
        cur = self._conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,))
        row = cur.fetchone()
        return SyncRun.from_row(row) if row else None

    def list_recent(self, limit: int = 10) -> list[SyncRun]:
        """List recent runs, newest first."""
        cur = self._conn.execute(
            "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
        return [SyncRun.from_row(row) for row in cur.fetchall()]


@dataclass
class SyncResult:
    """Counters returned by SyncOrchestrator.run()."""

    processed: int = 0
    skipped: int = 0
    pages: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "skipped": self.skipped, "pages": self.pages}


@dataclass(frozen=True)
class SyncOptions:
    database_id: str
    page_size: int = 10
    type_filter: str = ""
    status_filter: str = ""
    document_delay: float = 3.0
    page_delay: float = 3.0
    schema: PropertySchema = field(default_factory=PropertySchema)


class SyncOrchestrator:
    """Drives fetch, render, relay, publish and checkpoint for each document."""

    def __init__(
        self,
        notion: "NotionClient",
        wechat: "WeChatClient",
        fetcher: "TreeFetcher",
        renderer: "ContentRenderer",
        relay: "MediaRelay",
        options: SyncOptions,
        *,
        notion_policy: BackoffPolicy,
        wechat_policy: BackoffPolicy,
        db: "DB | None" = None,
        store: SyncRunStore | None = None,
    ) -> None:
        self._notion = notion
        self._wechat = wechat
        self._fetcher = fetcher
        self._renderer = renderer
        self._relay = relay
        self._options = options
        self._notion_policy = notion_policy
        self._wechat_policy = wechat_policy
        self._db = db
        self._store = store

    async def run(self, trigger: str = "manual") -> SyncResult:
        """Publish every unsynced document.

        Per-document failures are logged and skipped. A failure of the
        outer listing itself propagates to the caller.
        """
        result = SyncResult()
        run = self._store.create(trigger) if self._store else None
        query_filter = build_unsynced_filter(
            self._options.schema,
            type_value=self._options.type_filter,
            status_value=self._options.status_filter,
        )
        cursor: str | None = None
        has_more = True

        try:
            await self._check_database()
            while has_more:
                page = await self._query_page(query_filter, cursor)
                result.pages += 1
                has_more = page.has_more and bool(page.next_cursor)
                cursor = page.next_cursor

                for raw in page.results:
                    ok = await self.process_document(raw, run_id=run.id if run else None)
                    if ok:
                        result.processed += 1
                    else:
                        result.skipped += 1
                    if run:
                        run.pages_listed = result.pages
                        run.items_processed = result.processed
                        run.items_skipped = result.skipped
                        self._store.update(run)
                    await _pause(self._options.document_delay)

                if has_more:
                    await _pause(self._options.page_delay)

        except Exception as e:
            logger.exception("Sync failed")
            if run:
                self._store.finish(run, error=str(e))
            raise

        if run:
            self._store.finish(run)
        logger.info(
            f"Sync completed. Processed: {result.processed}, skipped: {result.skipped}, pages: {result.pages}"
        )
        return result

    async def _check_database(self) -> None:
        """Fail the run early if the configured properties do not exist."""
        database = await execute(
            lambda: self._notion.retrieve_database(self._options.database_id),
            self._notion_policy,
            name="retrieve database",
        )
        properties = database.get("properties") or {}
        logger.info(f"Database properties: {', '.join(sorted(properties))}")

        schema = self._options.schema
        required = [schema.title, schema.synced]
        if self._options.type_filter:
            required.append(schema.type)
        if self._options.status_filter:
            required.append(schema.status)
        missing = [name for name in required if name not in properties]
        if missing:
            raise DatabaseSchemaError(self._options.database_id, missing)

    async def _query_page(self, query_filter: dict[str, Any], cursor: str | None):
        def _warn(state: RetryState) -> None:
            logger.warning(f"Retrying database query due to error: {state.last_error}")

        return await execute(
            lambda: self._notion.query_database(
                self._options.database_id,
                filter=query_filter,
                page_size=self._options.page_size,
                start_cursor=cursor,
            ),
            self._notion_policy,
            on_retry=_warn,
            name="query database",
        )

    async def process_document(self, raw: dict[str, Any], run_id: str | None = None) -> bool:
        """Publish one database row. Returns False if it was skipped."""
        page_id = raw.get("id", "?")
        title: str | None = None
        try:
            doc = parse_document(raw, self._options.schema)
            title = doc.title
            publish_id = await self.publish_document(doc)
            await self._checkpoint(doc.id)
        except Exception as e:
            logger.error(
                f"Failed to process article {page_id} ({title or 'untitled'}): {type(e).__name__}: {e}",
                exc_info=not isinstance(e, DocumentValidationError),
            )
            if self._db is not None:
                self._db.save_sync_failure(
                    page_id=page_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    title=title,
                    run_id=run_id,
                )
            return False

        if self._db is not None:
            self._db.clear_sync_failure(doc.id)
        logger.info(f"Successfully processed article: {doc.title} (publish_id={publish_id})")
        return True

    async def publish_document(self, doc: Document) -> str:
        """Fetch, render and publish ``doc``. Returns the WeChat publish_id."""
        blocks = await self._fetcher.fetch_tree(doc.id)
        content = await self._renderer.render(blocks)

        if doc.cover is not None:
            thumb_media_id = await self._relay.relay(doc.cover.url, MediaKind.COVER)
        else:
            thumb_media_id = self._relay.fallback_for(MediaKind.COVER)
        if not thumb_media_id:
            raise DocumentValidationError(doc.id, "no cover image and no fallback media id configured")

        article = build_article(doc, content, thumb_media_id)

        def _warn(state: RetryState) -> None:
            logger.warning(f"Retrying publish of '{doc.title}' due to error: {state.last_error}")

        draft_id = await execute(
            lambda: self._wechat.add_draft([article]),
            self._wechat_policy,
            on_retry=_warn,
            name="create draft",
        )
        publish_id = await execute(
            lambda: self._wechat.submit_publish(draft_id),
            self._wechat_policy,
            on_retry=_warn,
            name="submit publish",
        )
        logger.info(f"Article published successfully: {doc.title} (draft={draft_id})")
        return publish_id

    async def _checkpoint(self, page_id: str) -> None:
        def _warn(state: RetryState) -> None:
            logger.warning(f"Retrying page update for {page_id} due to error: {state.last_error}")

        await execute(
            lambda: self._notion.mark_synced(page_id, self._options.schema),
            self._notion_policy,
            on_retry=_warn,
            name="mark synced",
        )


def build_article(doc: Document, content: str, thumb_media_id: str) -> dict[str, Any]:
    """WeChat draft article payload."""
    return {
        "title": doc.title,
        "author": doc.author,
        "digest": doc.summary,
        "content": content,
        "content_source_url": doc.source_url,
        "thumb_media_id": thumb_media_id,
        "show_cover_pic": 1,
        "need_open_comment": 0,
        "only_fans_can_comment": 0,
    }


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)
