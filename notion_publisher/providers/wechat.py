"""WeChat Official Account API client (media, drafts, publishing)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

WECHAT_BASE_URL = "https://api.weixin.qq.com"
WECHAT_TIMEOUT = 30.0

# Refresh the access token this many seconds before WeChat expires it
TOKEN_EXPIRY_MARGIN = 300

# errcodes worth retrying: system busy, invalid/expired token, api rate limit
RETRIABLE_ERRCODES = {-1, 40001, 40014, 42001, 45009, 45011}
TOKEN_ERRCODES = {40001, 40014, 42001}


class WeChatError(Exception):
    """Error returned by (or while calling) the WeChat API."""

    def __init__(self, message: str, errcode: int | None = None, retriable: bool = False):
        super().__init__(message)
        self.errcode = errcode
        self.retriable = retriable


class WeChatClient:
    """Async client for the subset of the Official Account API used for publishing.

    The access token is fetched lazily and cached until shortly before expiry.
    Token errors reported by any call drop the cached token so the retry
    picks up a fresh one.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        timeout: float = WECHAT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not app_id or not app_secret:
            raise ValueError("WeChat app id and secret are required")
        self._app_id = app_id
        self._app_secret = app_secret
        self._client = httpx.AsyncClient(
            base_url=WECHAT_BASE_URL,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "WeChatClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise WeChatError(f"WeChat request timed out: {url}", retriable=True) from e
        except httpx.TransportError as e:
            raise WeChatError(f"WeChat connection error: {e}", retriable=True) from e

        if resp.status_code >= 400:
            raise WeChatError(
                f"WeChat HTTP error {resp.status_code}",
                retriable=resp.status_code >= 500 or resp.status_code == 429,
            )

        # WeChat answers JSON with a text/plain content type and raw UTF-8
        data = resp.json()
        errcode = data.get("errcode", 0)
        if errcode:
            if errcode in TOKEN_ERRCODES:
                self._token = None
            raise WeChatError(
                f"WeChat API error {errcode}: {data.get('errmsg', '')}",
                errcode=errcode,
                retriable=errcode in RETRIABLE_ERRCODES,
            )
        return data

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            data = await self._send(
                "GET",
                "/cgi-bin/token",
                params={
                    "grant_type": "client_credential",
                    "appid": self._app_id,
                    "secret": self._app_secret,
                },
            )
            self._token = data["access_token"]
            expires_in = int(data.get("expires_in", 7200))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            logger.debug(f"Fetched WeChat access token (expires in {expires_in}s)")
            return self._token

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        token = await self.get_access_token()
        params = dict(kwargs.pop("params", None) or {})
        params["access_token"] = token
        return await self._send(method, url, params=params, **kwargs)

    async def upload_image(self, content: bytes, filename: str, content_type: str) -> str:
        """Upload an in-article image. Returns the hosted image URL."""
        data = await self._call(
            "POST",
            "/cgi-bin/media/uploadimg",
            files={"media": (filename, content, content_type)},
        )
        return data["url"]

    async def add_image_material(self, content: bytes, filename: str, content_type: str) -> str:
        """Upload a permanent image (cover thumbnail). Returns its media_id."""
        data = await self._call(
            "POST",
            "/cgi-bin/material/add_material",
            params={"type": "image"},
            files={"media": (filename, content, content_type)},
        )
        return data["media_id"]

    async def add_draft(self, articles: list[dict[str, Any]]) -> str:
        """Create a draft holding ``articles``. Returns the draft media_id."""
        data = await self._call(
            "POST",
            "/cgi-bin/draft/add",
            content=_json_utf8({"articles": articles}),
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        return data["media_id"]

    async def submit_publish(self, media_id: str) -> str:
        """Submit a draft for publishing. Returns the publish_id."""
        data = await self._call(
            "POST",
            "/cgi-bin/freepublish/submit",
            content=_json_utf8({"media_id": media_id}),
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        return str(data["publish_id"])


def _json_utf8(payload: dict[str, Any]) -> bytes:
    # WeChat stores \uXXXX escapes literally, so send raw UTF-8
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")
