"""
Wasmgate HTTP Fetcher

Downloads artifacts, checksum files and signatures with bounded retries.
Timeouts, connection failures, 5xx and 429 responses are transient; any
other 4xx is permanent and reported immediately.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from wasmgate.config import NetworkConfig
from wasmgate.errors import NetworkError, OfflineCacheMissError
from wasmgate.resilience.retry import RetryConfig, RetryPolicy
from wasmgate.types import ResolvedArtifact

logger = structlog.get_logger(__name__)


def is_transient_status(status: int) -> bool:
    return status >= 500 or status in (408, 429)


class HttpFetcher:
    """
    Async fetcher shared by the cache manager and version sources.

    A custom httpx transport may be injected (httpx.MockTransport in tests).
    In offline mode every remote request fails with OfflineCacheMissError
    before touching the network.
    """

    def __init__(
        self,
        config: Optional[NetworkConfig] = None,
        offline: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or NetworkConfig()
        self.offline = offline
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._retry = RetryPolicy(
            RetryConfig(
                max_attempts=self.config.max_retries,
                base_delay=self.config.backoff_base_seconds,
                max_delay=self.config.backoff_max_seconds,
            ),
            sleep=sleep,
        )
        self.requests_made = 0

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _guard_offline(self, url: str) -> None:
        if self.offline:
            raise OfflineCacheMissError(f"Offline mode forbids fetching {url}")

    async def _request_once(self, url: str, headers: Optional[Dict[str, str]]) -> httpx.Response:
        self.requests_made += 1
        try:
            response = await self._get_client().get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError("Request timed out", url=url, transient=True, cause=e)
        except httpx.TransportError as e:
            raise NetworkError("Connection failed", url=url, transient=True, cause=e)

        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code}",
                url=url,
                status=response.status_code,
                transient=is_transient_status(response.status_code),
            )
        return response

    async def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """
        GET with retries.

        Raises:
            OfflineCacheMissError: Offline mode is enabled
            NetworkError: Permanent failure or retries exhausted
        """
        self._guard_offline(url)
        response = await self._retry.execute(self._request_once, url, headers)
        logger.debug("Fetched", url=url, status=response.status_code, size=len(response.content))
        return response

    async def fetch_bytes(self, url: str, headers: Optional[Dict[str, str]] = None) -> bytes:
        return (await self.get(url, headers)).content

    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        return (await self.get(url, headers)).text

    async def fetch_optional(self, url: str) -> Optional[bytes]:
        """Fetch bytes, or None when the resource does not exist (404)."""
        try:
            return await self.fetch_bytes(url)
        except NetworkError as e:
            if e.status == 404:
                return None
            raise

    async def fetch_artifact(self, artifact: ResolvedArtifact) -> bytes:
        """Read a remote artifact over HTTP or a local one from disk."""
        if artifact.is_remote:
            return await self.fetch_bytes(artifact.url)
        return await read_local(artifact.path)


async def read_local(path: Path) -> bytes:
    """Read a local file in the default executor."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, Path(path).read_bytes)
    except FileNotFoundError as e:
        raise NetworkError(f"Local artifact not found: {path}", status=404, cause=e)
    except OSError as e:
        raise NetworkError(f"Local artifact unreadable: {path}", cause=e)
