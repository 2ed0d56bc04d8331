"""Wires clients and pipeline components together once per process."""

from __future__ import annotations

import asyncio
import logging

import httpx

from notion_publisher.core.media_relay import MediaRelay
from notion_publisher.core.renderer import ContentRenderer
from notion_publisher.core.scheduler import SyncScheduler
from notion_publisher.core.settings import Settings
from notion_publisher.core.storage import DB, connect
from notion_publisher.core.sync_job import SyncOptions, SyncOrchestrator, SyncResult, SyncRunStore
from notion_publisher.core.tree_fetcher import TreeFetcher
from notion_publisher.providers.notion import NotionClient
from notion_publisher.providers.wechat import WeChatClient

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(Exception):
    """A run was requested while another one is in progress."""


class SyncService:
    """Owns the orchestrator, its run history and the single-run lock."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        db: DB,
        store: SyncRunStore,
        *,
        interval: float = 0,
        resources: tuple = (),
    ) -> None:
        self.orchestrator = orchestrator
        self.db = db
        self.store = store
        self._lock = asyncio.Lock()
        self._resources = resources
        self.scheduler = SyncScheduler(self._scheduled_run, interval)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncService":
        db = connect(settings.db_path)
        store = SyncRunStore(db.conn)
        notion = NotionClient(settings.notion_api_key)
        wechat = WeChatClient(settings.wechat_app_id, settings.wechat_app_secret)
        http = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Mozilla/5.0 (compatible; notion-publisher/1.0)"},
        )
        relay = MediaRelay(
            http,
            wechat,
            download_policy=settings.download_retry,
            upload_policy=settings.wechat_retry,
            max_bytes=settings.max_image_bytes,
            allowed_types=settings.image_types,
            fallback_reference=settings.wechat_fallback_media_id,
            inline_fallback=settings.wechat_inline_fallback_url,
        )
        fetcher = TreeFetcher(notion, settings.notion_retry, page_delay=settings.tree_page_delay)
        orchestrator = SyncOrchestrator(
            notion,
            wechat,
            fetcher,
            ContentRenderer(relay),
            relay,
            SyncOptions(
                database_id=settings.notion_database_id,
                page_size=settings.notion_page_size,
                type_filter=settings.notion_type_filter,
                status_filter=settings.notion_status_filter,
                document_delay=settings.sync_document_delay,
                page_delay=settings.sync_page_delay,
            ),
            notion_policy=settings.notion_retry,
            wechat_policy=settings.wechat_retry,
            db=db,
            store=store,
        )
        return cls(
            orchestrator,
            db,
            store,
            interval=settings.sync_interval_seconds,
            resources=(notion, wechat, http),
        )

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, trigger: str = "manual") -> SyncResult:
        """Run one sync. Raises SyncAlreadyRunningError instead of queueing."""
        if self._lock.locked():
            raise SyncAlreadyRunningError("A sync run is already in progress")
        async with self._lock:
            logger.info(f"Starting sync run ({trigger})")
            return await self.orchestrator.run(trigger=trigger)

    async def _scheduled_run(self) -> None:
        try:
            await self.run(trigger="scheduled")
        except SyncAlreadyRunningError:
            logger.info("Skipping scheduled sync: previous run still in progress")

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        for resource in self._resources:
            if isinstance(resource, httpx.AsyncClient):
                await resource.aclose()
            else:
                await resource.close()
        self.db.conn.close()
