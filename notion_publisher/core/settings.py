from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

from notion_publisher.core.backoff import BackoffPolicy

DEFAULT_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    port: int
    db_path: str
    notion_api_key: str
    notion_database_id: str
    notion_page_size: int
    notion_type_filter: str
    notion_status_filter: str
    wechat_app_id: str
    wechat_app_secret: str
    wechat_fallback_media_id: str
    wechat_inline_fallback_url: str
    max_image_bytes: int
    image_types: tuple[str, ...]
    sync_interval_seconds: float
    sync_document_delay: float
    sync_page_delay: float
    tree_page_delay: float
    notion_retry: BackoffPolicy
    wechat_retry: BackoffPolicy
    download_retry: BackoffPolicy

    @staticmethod
    def from_env() -> "Settings":
        def _s(name: str, default: str = "") -> str:
            return os.getenv(name, default).strip()

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _policy(prefix: str, attempts: str, min_delay: str, max_delay: str) -> BackoffPolicy:
            return BackoffPolicy(
                max_attempts=_i(f"{prefix}_RETRY_ATTEMPTS", attempts),
                min_delay=_f(f"{prefix}_RETRY_MIN_DELAY", min_delay),
                max_delay=_f(f"{prefix}_RETRY_MAX_DELAY", max_delay),
                factor=_f(f"{prefix}_RETRY_FACTOR", "2"),
                jitter=_b(f"{prefix}_RETRY_JITTER", "1"),
            )

        image_types = tuple(
            t.strip() for t in _s("ALLOWED_IMAGE_TYPES", ",".join(DEFAULT_IMAGE_TYPES)).split(",") if t.strip()
        )

        return Settings(
            app_env=_s("APP_ENV", "dev"),
            log_level=_s("LOG_LEVEL", "INFO").upper(),
            port=_i("PORT", "80"),
            db_path=_s("DB_PATH", "/app/_local/data/sync.db"),
            notion_api_key=_s("NOTION_API_KEY"),
            notion_database_id=_s("NOTION_DATABASE_ID"),
            notion_page_size=_i("NOTION_PAGE_SIZE", "10"),
            notion_type_filter=_s("NOTION_TYPE_FILTER", "Post"),
            notion_status_filter=_s("NOTION_STATUS_FILTER", "Published"),
            wechat_app_id=_s("WECHAT_APP_ID"),
            wechat_app_secret=_s("WECHAT_APP_SECRET"),
            wechat_fallback_media_id=_s("WECHAT_FALLBACK_MEDIA_ID"),
            wechat_inline_fallback_url=_s("WECHAT_INLINE_FALLBACK_URL"),
            max_image_bytes=_i("MAX_IMAGE_BYTES", str(2 * 1024 * 1024)),
            image_types=image_types,
            sync_interval_seconds=_f("SYNC_INTERVAL_SECONDS", "300"),
            sync_document_delay=_f("SYNC_DOCUMENT_DELAY", "3.0"),
            sync_page_delay=_f("SYNC_PAGE_DELAY", "3.0"),
            tree_page_delay=_f("TREE_PAGE_DELAY", "0.35"),
            # Listing calls get more attempts with shorter waits than publish calls
            notion_retry=_policy("NOTION", "5", "1.0", "15.0"),
            wechat_retry=_policy("WECHAT", "3", "3.0", "30.0"),
            download_retry=_policy("DOWNLOAD", "3", "1.0", "10.0"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the root logger.

    Safe to call more than once (uvicorn reload, tests).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root.handlers:
        if getattr(handler, "_notion_publisher", False):
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._notion_publisher = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
