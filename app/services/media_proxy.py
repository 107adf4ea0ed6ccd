"""
Resolution of externally hosted media (Telegram documents, photos, videos)
into short-lived download URLs.

Proxy ids may be indirections stored in Redis under ``telegram_proxy:{id}``
(``{"fileId": ...}``); otherwise the id is the Telegram file id itself.
"""

import json
import logging
from typing import Optional

import httpx

from app.core.config import settings
from app.core.exceptions import ErrorCode, StorageError, UpstreamError

logger = logging.getLogger(__name__)

TELEGRAM_PROXY_PREFIX = "telegram_proxy:"


class MediaProxyResolver:
    def __init__(
        self,
        kv=None,
        bot_token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.kv = kv
        self.bot_token = settings.TELEGRAM_BOT_TOKEN if bot_token is None else bot_token
        self.api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def _file_id(self, proxy_id: str) -> str:
        if self.kv is None:
            return proxy_id
        raw = await self.kv.get(f"{TELEGRAM_PROXY_PREFIX}{proxy_id}")
        if not raw:
            return proxy_id
        try:
            return json.loads(raw).get("fileId") or proxy_id
        except (ValueError, AttributeError):
            logger.warning("Ignoring malformed proxy mapping for %s", proxy_id)
            return proxy_id

    async def resolve(self, proxy_id: str) -> str:
        """Return a temporary download URL for ``proxy_id``"""
        if not self.bot_token:
            raise StorageError("Bot not configured", ErrorCode.MEDIA_PROXY_NOT_CONFIGURED)

        file_id = await self._file_id(proxy_id)
        url = f"{self.api_base}/bot{self.bot_token}/getFile"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.get(url, params={"file_id": file_id})
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram getFile failed for %s", file_id, exc_info=True)
            raise UpstreamError("Failed to proxy media", ErrorCode.MEDIA_PROXY_FAILED) from e

        if not payload.get("ok") or not payload.get("result", {}).get("file_path"):
            description = payload.get("description", "unknown error")
            logger.error("Telegram getFile error for %s: %s", file_id, description)
            raise UpstreamError(f"Telegram API error: {description}", ErrorCode.MEDIA_PROXY_FAILED)

        return f"{self.api_base}/file/bot{self.bot_token}/{payload['result']['file_path']}"
