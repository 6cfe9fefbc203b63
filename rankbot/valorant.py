import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple
from urllib.parse import quote

import aiohttp

from .config import DEFAULT_API_BASE_URL

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ValorantAPIError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientUpstreamError(ValorantAPIError):
    """Rate limited (HTTP 429) and out of retries."""


class TerminalUpstreamError(ValorantAPIError):
    """Non-retryable failure: other HTTP status, timeout or network error."""


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    sleep: Sleep = field(default=asyncio.sleep, compare=False)

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2**attempt)


def _segment(value: str) -> str:
    return quote(str(value).strip(), safe="")


class ValorantClient:
    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
    ):
        self._session = session
        self._owns_session = session is None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _send(self, url: str) -> Tuple[int, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with self._session.get(url, timeout=timeout) as resp:
            if resp.status >= 400:
                return resp.status, None
            if resp.content_type == "application/json":
                return resp.status, await resp.json()
            return resp.status, await resp.text()

    async def _request(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        policy = self.retry_policy
        attempt = 0
        while True:
            try:
                status, payload = await self._send(url)
            except asyncio.TimeoutError as exc:
                raise TerminalUpstreamError(f"Timed out requesting {url}") from exc
            except aiohttp.ClientError as exc:
                raise TerminalUpstreamError(f"Failed request {url}: {exc}") from exc

            if status == 429:
                if attempt >= policy.max_retries:
                    raise TransientUpstreamError(
                        f"Rate limited requesting {url} after {attempt} retries",
                        status=429,
                    )
                delay = policy.delay(attempt)
                attempt += 1
                LOGGER.warning(
                    "Rate limited by ranking API; retry %s/%s in %.1fs",
                    attempt,
                    policy.max_retries,
                    delay,
                )
                await policy.sleep(delay)
                continue
            if status < 200 or status >= 300:
                raise TerminalUpstreamError(
                    f"Ranking API returned {status} for {url}", status=status
                )
            return payload

    async def fetch_rank(
        self, username: str, tag: str, region: str, platform: str = "pc"
    ) -> Any:
        path = f"/mmr/{_segment(username)}/{_segment(tag)}/{_segment(region)}"
        if platform == "console":
            path += "/console"
        return await self._request(path)

    async def fetch_match_history(
        self,
        username: str,
        tag: str,
        region: str,
        platform: str = "pc",
        timezone: str = "Asia/Tokyo",
    ) -> Any:
        platform_path = "console" if platform == "console" else "pc"
        path = (
            f"/match_history/{_segment(username)}/{_segment(tag)}/{_segment(region)}"
            f"/{platform_path}?timezone={quote(timezone, safe='/')}"
        )
        return await self._request(path)
