import logging
import time
from json import JSONDecodeError
from typing import Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
HTTP_TIMEOUT = 12.0
# Telegram keeps file download links valid for at least an hour
URL_CACHE_TTL = 30 * 60.0
MAX_ATTEMPTS = 2


class ImageStore:
    """Resolve Telegram file ids to downloadable URLs through the Bot API."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = TELEGRAM_API_URL,
        timeout: float = HTTP_TIMEOUT,
        cache_ttl: float = URL_CACHE_TTL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._transport = transport
        self._cache: Dict[str, Tuple[float, str]] = {}

    def file_url(self, file_path: str) -> str:
        return f"{self.base_url}/file/bot{self.token}/{file_path}"

    async def _get_file_once(self, file_id: str) -> Tuple[httpx.Response, Optional[dict]]:
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/bot{self.token}/getFile", params={"file_id": file_id})
        try:
            data = response.json() if response.content else None
        except JSONDecodeError:
            data = None
        return response, data

    async def _get_file(self, file_id: str) -> Optional[dict]:
        """Call getFile with a single retry on transport errors and 5xx."""
        response: Optional[httpx.Response] = None
        data: Optional[dict] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response, data = await self._get_file_once(file_id)
            except httpx.HTTPError as e:
                logger.warning("getFile error for %s (attempt %d): %s", file_id, attempt, e)
                response, data = None, None
                continue
            if response.status_code < 500:
                break
        if response is None:
            return None
        if not (isinstance(data, dict) and data.get("ok") and isinstance(data.get("result"), dict)):
            logger.warning("getFile failed for %s: HTTP %s", file_id, response.status_code)
            return None
        return data["result"]

    async def resolve_url(self, file_id: Optional[str]) -> Optional[str]:
        """Return a fetchable URL for the file, or None if it cannot be resolved."""
        if not file_id:
            return None
        cached = self._cache.get(file_id)
        if cached:
            if time.monotonic() - cached[0] < self.cache_ttl:
                return cached[1]
            del self._cache[file_id]
        result = await self._get_file(file_id)
        file_path = (result or {}).get("file_path")
        if not file_path:
            return None
        url = self.file_url(file_path)
        self._prune()
        self._cache[file_id] = (time.monotonic(), url)
        return url

    def _prune(self) -> None:
        now = time.monotonic()
        for file_id in [k for k, (stored, _) in self._cache.items() if now - stored >= self.cache_ttl]:
            del self._cache[file_id]
