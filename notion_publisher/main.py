from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from notion_publisher.core.service import SyncAlreadyRunningError, SyncService
from notion_publisher.core.settings import Settings, configure_logging

logger = logging.getLogger(__name__)


def create_app(service: SyncService | None = None) -> FastAPI:
    """Build the HTTP surface.

    Without an explicit ``service`` one is built from the environment on
    startup and the background scheduler is started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            s = Settings.from_env()
            configure_logging(s.log_level)
            app.state.service = SyncService.from_settings(s)
            app.state.service.start()
            logger.info(f"notion-publisher started ({s.app_env})")
        yield
        if owned:
            await app.state.service.close()

    app = FastAPI(title="notion-publisher", lifespan=lifespan)
    app.state.service = service

    def _service(request: Request) -> SyncService:
        return request.app.state.service

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        return "OK"

    @app.post("/sync")
    async def sync(request: Request):
        """Run a sync now and report counts when it finishes."""
        try:
            result = await _service(request).run(trigger="manual")
        except SyncAlreadyRunningError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except Exception as e:
            logger.error(f"Sync failed: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)
        return {"message": "Sync completed", **result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(request: Request):
        service = _service(request)
        recent = service.store.list_recent(limit=1)
        return {
            "running": service.busy,
            "scheduler_running": service.scheduler.running,
            "last_run": recent[0].to_dict() if recent else None,
        }

    @app.get("/api/sync/runs")
    def sync_runs(request: Request, limit: int = 10):
        return {"runs": [run.to_dict() for run in _service(request).store.list_recent(limit=limit)]}

    @app.get("/api/sync/failures")
    def sync_failures(request: Request, error_type: str | None = None, limit: int = 100):
        """Documents whose last sync attempt failed, with a per-type summary."""
        db = _service(request).db
        return {
            "failures": db.get_sync_failures(error_type=error_type, limit=limit),
            "failures_by_type": db.get_failure_summary(),
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    s = Settings.from_env()
    configure_logging(s.log_level)
    uvicorn.run("notion_publisher.main:app", host="0.0.0.0", port=s.port)


if __name__ == "__main__":
    main()
