"""Tests for sync_job.py"""

import httpx
import pytest

from conftest import NO_WAIT, FakeNotion, FakeWeChat, block, image_block, notion_page
from notion_publisher.core import sync_job
from notion_publisher.core.backoff import BackoffPolicy, RetryExhaustedError
from notion_publisher.core.media_relay import MediaRelay
from notion_publisher.core.renderer import ContentRenderer
from notion_publisher.core.storage import connect
from notion_publisher.core.sync_job import (
    SyncOptions,
    SyncOrchestrator,
    SyncRunStore,
    SyncStatus,
    build_article,
)
from notion_publisher.core.tree_fetcher import TreeFetcher
from notion_publisher.providers.content_types import Document
from notion_publisher.providers.notion import DatabaseSchemaError, NotionError

PNG = b"\x89PNG" + b"\x00" * 64


def image_source(request):
    if "missing" in request.url.path:
        return httpx.Response(404)
    return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG)


class Harness:
    """Orchestrator wired to in-memory fakes."""

    def __init__(self, rows, children=None, fallback="", page_size=10, notion_policy=NO_WAIT):
        self.notion = FakeNotion(children=children or {}, rows=rows, query_page_size=page_size)
        self.wechat = FakeWeChat()
        self.db = connect(":memory:")
        self.store = SyncRunStore(self.db.conn)
        self.relay = MediaRelay(
            httpx.AsyncClient(transport=httpx.MockTransport(image_source)),
            self.wechat,
            download_policy=NO_WAIT,
            upload_policy=NO_WAIT,
            fallback_reference=fallback,
        )
        self.orchestrator = SyncOrchestrator(
            self.notion,
            self.wechat,
            TreeFetcher(self.notion, NO_WAIT, page_delay=0),
            ContentRenderer(self.relay),
            self.relay,
            SyncOptions(
                database_id="db1",
                page_size=page_size,
                type_filter="Post",
                status_filter="Published",
                document_delay=0,
                page_delay=0,
            ),
            notion_policy=notion_policy,
            wechat_policy=NO_WAIT,
            db=self.db,
            store=self.store,
        )

    def synced(self, page_id):
        row = next(r for r in self.notion.rows if r["id"] == page_id)
        return row["properties"]["synced"]["checkbox"]

    def titles_published(self):
        return [articles[0]["title"] for articles in self.wechat.drafts]


def rows(*ids):
    return [notion_page(i, title=f"Title {i}", cover_url=f"https://s3.test/{i}/cover.png") for i in ids]


@pytest.mark.asyncio
class TestSyncOrchestrator:
    async def test_publishes_and_checkpoints(self):
        h = Harness(
            rows("p1"),
            children={"p1": [[block("b1", text="Hello"), image_block("b2", "https://s3.test/img.png")]]},
        )
        result = await h.orchestrator.run()

        assert result.processed == 1
        assert result.skipped == 0
        assert h.synced("p1") is True
        article = h.wechat.drafts[0][0]
        assert article["title"] == "Title p1"
        assert article["author"] == "Ann"
        assert article["digest"] == "Sum"
        assert article["content_source_url"] == "https://www.notion.so/p1"
        assert article["thumb_media_id"] == "THUMB_1"
        assert article["content"] == '<p>Hello</p><img src="https://mmbiz.qpic.cn/img/1"/>'
        assert h.wechat.published == ["DRAFT_1"]

    async def test_query_uses_unsynced_filter(self):
        h = Harness(rows("p1"))
        await h.orchestrator.run()
        database_id, query_filter, cursor = h.notion.query_calls[0]
        assert database_id == "db1"
        assert cursor is None
        assert {"property": "synced", "checkbox": {"equals": False}} in query_filter["and"]

    async def test_pagination_exhaustion(self):
        h = Harness(rows("p1", "p2", "p3"), page_size=1)
        result = await h.orchestrator.run()

        assert result.pages == 3
        assert result.processed == 3
        assert h.titles_published() == ["Title p1", "Title p2", "Title p3"]
        assert [c[2] for c in h.notion.query_calls] == [None, "1", "2"]

    async def test_second_run_is_idempotent(self):
        h = Harness(rows("p1", "p2"))
        first = await h.orchestrator.run()
        second = await h.orchestrator.run()

        assert first.processed == 2
        assert second.processed == 0
        assert second.skipped == 0
        assert len(h.wechat.drafts) == 2

    @pytest.mark.parametrize("stage", ["title", "fetch", "publish", "checkpoint", "cover"])
    async def test_failure_isolated_to_one_document(self, stage):
        docs = rows("p1", "p2", "p3")
        h = Harness(docs, children={"p2": [[block("x", text="x")]]})
        if stage == "title":
            docs[1]["properties"]["title"]["title"] = []
        elif stage == "fetch":
            h.notion.fail_listing["p2"] = -1
        elif stage == "publish":
            h.wechat.reject_titles.add("Title p2")
        elif stage == "checkpoint":
            h.notion.fail_update.add("p2")
        elif stage == "cover":
            docs[1]["properties"]["cover"]["files"][0]["file"]["url"] = "https://s3.test/missing.png"

        result = await h.orchestrator.run()

        assert result.processed == 2
        assert result.skipped == 1
        assert h.synced("p1") is True
        assert h.synced("p2") is False
        assert h.synced("p3") is True
        failures = h.db.get_sync_failures()
        assert [f["page_id"] for f in failures] == ["p2"]

    async def test_missing_cover_uses_fallback(self):
        docs = [notion_page("p1", title="No cover")]
        h = Harness(docs, fallback="DEFAULT_THUMB")
        result = await h.orchestrator.run()
        assert result.processed == 1
        assert h.wechat.drafts[0][0]["thumb_media_id"] == "DEFAULT_THUMB"

    async def test_missing_cover_without_fallback_skips(self):
        h = Harness([notion_page("p1", title="No cover")])
        result = await h.orchestrator.run()
        assert result.skipped == 1
        assert h.wechat.drafts == []
        assert h.db.get_sync_failures()[0]["error_type"] == "DocumentValidationError"

    async def test_transient_publish_error_retried(self):
        h = Harness(rows("p1"))
        h.wechat.fail_drafts = 2
        result = await h.orchestrator.run()
        assert result.processed == 1
        assert h.synced("p1") is True

    async def test_failed_document_retried_next_run(self):
        h = Harness(rows("p1"))
        h.wechat.reject_titles.add("Title p1")
        assert (await h.orchestrator.run()).skipped == 1

        h.wechat.reject_titles.clear()
        assert (await h.orchestrator.run()).processed == 1
        assert h.db.get_sync_failures() == []

    async def test_repeat_failure_bumps_retry_count(self):
        h = Harness(rows("p1"))
        h.wechat.reject_titles.add("Title p1")
        await h.orchestrator.run()
        await h.orchestrator.run()
        assert h.db.get_sync_failures()[0]["retry_count"] == 1

    async def test_listing_failure_propagates(self):
        h = Harness(rows("p1"), notion_policy=BackoffPolicy(max_attempts=2, min_delay=0, max_delay=0))

        async def broken(*args, **kwargs):
            raise NotionError("service unavailable", status=503, retriable=True)

        h.notion.query_database = broken

        with pytest.raises(RetryExhaustedError):
            await h.orchestrator.run()

        last = h.store.list_recent(limit=1)[0]
        assert last.status == SyncStatus.FAILED
        assert "service unavailable" in last.error

    async def test_database_checked_once_per_run(self):
        h = Harness(rows("p1", "p2"), page_size=1)
        await h.orchestrator.run()
        assert h.notion.database_calls == ["db1"]

    async def test_missing_schema_property_fails_run(self):
        h = Harness(rows("p1"))
        del h.notion.database_properties["synced"]

        with pytest.raises(DatabaseSchemaError) as exc_info:
            await h.orchestrator.run()

        assert exc_info.value.missing == ["synced"]
        assert h.notion.query_calls == []
        assert h.wechat.drafts == []
        last = h.store.list_recent(limit=1)[0]
        assert last.status == SyncStatus.FAILED
        assert "synced" in last.error

    async def test_run_history_recorded(self):
        h = Harness(rows("p1", "p2"), page_size=1)
        await h.orchestrator.run(trigger="scheduled")

        run = h.store.list_recent(limit=1)[0]
        assert run.status == SyncStatus.COMPLETED
        assert run.trigger == "scheduled"
        assert run.items_processed == 2
        assert run.pages_listed == 2
        assert run.finished_at is not None

    async def test_delays_between_documents_and_pages(self, monkeypatch):
        pauses = []

        async def record(seconds):
            pauses.append(seconds)

        monkeypatch.setattr(sync_job, "_pause", record)
        h = Harness(rows("p1", "p2", "p3"), page_size=2)
        h.orchestrator._options = SyncOptions(database_id="db1", page_size=2, document_delay=1.5, page_delay=4.0)

        await h.orchestrator.run()

        # doc, doc, page break, doc
        assert pauses == [1.5, 1.5, 4.0, 1.5]


class TestBuildArticle:
    def test_payload_fields(self):
        doc = Document(id="p", title="T", source_url="https://n/p", author="A", summary="S")
        article = build_article(doc, "<p>x</p>", "THUMB")
        assert article["title"] == "T"
        assert article["author"] == "A"
        assert article["digest"] == "S"
        assert article["content"] == "<p>x</p>"
        assert article["content_source_url"] == "https://n/p"
        assert article["thumb_media_id"] == "THUMB"


class TestSyncRunStore:
    def test_create_and_finish(self):
        db = connect(":memory:")
        store = SyncRunStore(db.conn)
        run = store.create(trigger="manual")
        assert store.get(run.id).status == SyncStatus.RUNNING

        run.items_processed = 4
        store.finish(run)

        stored = store.get(run.id)
        assert stored.status == SyncStatus.COMPLETED
        assert stored.items_processed == 4
        assert stored.to_dict()["finished_at"] is not None

    def test_finish_with_error(self):
        store = SyncRunStore(connect(":memory:").conn)
        run = store.create()
        store.finish(run, error="boom")
        assert store.get(run.id).status == SyncStatus.FAILED
        assert store.get(run.id).error == "boom"

    def test_get_missing(self):
        store = SyncRunStore(connect(":memory:").conn)
        assert store.get("nope") is None
