"""Relay of remote images into WeChat media storage.

Downloads are streamed with a byte ceiling and a content-type allow-list;
uploads go to the in-article image endpoint (inline) or permanent material
(covers). relay() never raises: failures produce the fallback reference.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx

from notion_publisher.core.backoff import BackoffPolicy, execute
from notion_publisher.providers.content_types import MediaKind

if TYPE_CHECKING:
    from notion_publisher.providers.wechat import WeChatClient

logger = logging.getLogger(__name__)

# Maximum image size WeChat accepts for uploadimg (2MB)
MAX_MEDIA_SIZE = 2 * 1024 * 1024

DOWNLOAD_TIMEOUT = 30.0

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif")


class MediaError(Exception):
    """Transient failure while downloading or uploading media."""

    retriable = True


class MediaValidationError(MediaError):
    """Media rejected by size or type checks. Never retried."""

    retriable = False


class MediaTooLargeError(MediaValidationError):
    pass


class MediaTypeError(MediaValidationError):
    pass


@dataclass(frozen=True)
class DownloadedMedia:
    content: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.content)


def _base_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def _filename_for(url: str, content_type: str) -> str:
    """Stable-enough upload name; WeChat infers format from the extension."""
    ext = mimetypes.guess_extension(content_type) or ""
    if ext in ("", ".jpe"):
        ext = ".jpg"
    stem = urlparse(url).path.rsplit("/", 1)[-1].rsplit(".", 1)[0] or "image"
    return f"{stem[:40]}-{uuid.uuid4().hex[:8]}{ext}"


class MediaRelay:
    """Moves images from their source URL into WeChat storage."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        wechat: "WeChatClient",
        *,
        download_policy: BackoffPolicy,
        upload_policy: BackoffPolicy,
        max_bytes: int = MAX_MEDIA_SIZE,
        allowed_types: tuple[str, ...] = ALLOWED_IMAGE_TYPES,
        fallback_reference: str = "",
        inline_fallback: str = "",
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self._http = http
        self._wechat = wechat
        self._download_policy = download_policy
        self._upload_policy = upload_policy
        self._max_bytes = max_bytes
        self._allowed_types = tuple(_base_type(t) for t in allowed_types)
        self._fallback = fallback_reference
        self._inline_fallback = inline_fallback
        self._timeout = timeout

    def fallback_for(self, kind: MediaKind) -> str:
        return self._fallback if kind == MediaKind.COVER else self._inline_fallback

    async def download_media(self, url: str, *, enforce_types: bool = True) -> DownloadedMedia:
        """Fetch ``url`` once, enforcing the byte ceiling and type allow-list.

        Raises:
            MediaTooLargeError: Declared or streamed size exceeds the ceiling.
            MediaTypeError: Content type not in the allow-list.
            MediaError: HTTP or transport failure.
        """
        try:
            async with self._http.stream("GET", url, timeout=self._timeout, follow_redirects=True) as resp:
                if resp.status_code >= 400:
                    error = MediaError(f"HTTP {resp.status_code} downloading {url}")
                    error.retriable = resp.status_code >= 500 or resp.status_code == 429
                    raise error

                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise MediaTooLargeError(
                        f"Declared size {declared} bytes exceeds limit of {self._max_bytes}"
                    )

                content_type = _base_type(resp.headers.get("content-type"))
                if not content_type:
                    content_type = mimetypes.guess_type(urlparse(url).path)[0] or ""
                if enforce_types and content_type not in self._allowed_types:
                    raise MediaTypeError(f"Unsupported media type: {content_type or 'unknown'}")

                received = 0
                chunks: list[bytes] = []
                async for chunk in resp.aiter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise MediaTooLargeError(
                            f"Download exceeded limit of {self._max_bytes} bytes"
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise MediaError(f"Timed out downloading {url}") from e
        except httpx.TransportError as e:
            raise MediaError(f"Connection error downloading {url}: {e}") from e

        return DownloadedMedia(
            content=b"".join(chunks),
            content_type=content_type or "image/jpeg",
            filename=_filename_for(url, content_type or "image/jpeg"),
        )

    async def upload_media(self, media: DownloadedMedia, kind: MediaKind) -> str:
        """Store ``media`` in WeChat. Returns a URL (inline) or media_id (cover)."""
        if kind == MediaKind.COVER:
            return await self._wechat.add_image_material(media.content, media.filename, media.content_type)
        return await self._wechat.upload_image(media.content, media.filename, media.content_type)

    async def relay(
        self,
        url: str,
        kind: MediaKind = MediaKind.INLINE,
        *,
        enforce_types: bool = True,
    ) -> str:
        """Download ``url`` and re-upload it. Returns the fallback reference on any failure."""
        if not url:
            return self.fallback_for(kind)
        try:
            media = await execute(
                lambda: self.download_media(url, enforce_types=enforce_types),
                self._download_policy,
                name=f"download {kind.value} image",
            )
            reference = await execute(
                lambda: self.upload_media(media, kind),
                self._upload_policy,
                name=f"upload {kind.value} image",
            )
        except Exception as e:
            logger.error(f"Image relay failed for {url}: {type(e).__name__}: {e}")
            return self.fallback_for(kind)

        logger.info(f"Relayed {kind.value} image ({media.size} bytes) -> {reference}")
        return reference
