"""HTTP fetching of plugin targets using aiohttp."""

import asyncio
from typing import Dict, Mapping, Optional

import aiohttp

from ..foundation.config import get_config_manager
from ..foundation.errors import FetchError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector


class Fetcher:
    """Thin wrapper over ``aiohttp.ClientSession`` for plugin GET requests.

    Retries are not done here; a failed fetch fails the job attempt and the
    scheduler's retry policy decides what happens next.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        max_content_bytes: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        config = get_config_manager()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self.timeout = float(timeout or config.get_setting("fetch.timeout", 30.0))
        self.user_agent = user_agent or config.get_setting("fetch.user_agent", "Scrapeboard/1.0")
        self.max_content_bytes = int(
            max_content_bytes or config.get_setting("fetch.max_content_bytes", 10 * 1024 * 1024)
        )
        self.verify_ssl = config.get_setting("fetch.verify_ssl", True) if verify_ssl is None else verify_ssl
        self._external_session = session
        self._own_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "Fetcher":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session is not None:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
            self._own_session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": self.user_agent},
            )
        return self._own_session

    async def close(self) -> None:
        if self._own_session is not None and not self._own_session.closed:
            await self._own_session.close()
        self._own_session = None

    async def fetch(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """GET ``url`` and return the decoded body.

        Raises:
            FetchError: On network errors, timeouts, HTTP status >= 400 or
                oversized bodies
        """
        session = await self._ensure_session()
        request_headers: Dict[str, str] = dict(headers or {})
        timeout = timeout or self.timeout
        self.metrics.increment_counter("fetch.requests")

        try:
            async with session.get(
                url,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
            ) as response:
                if response.status >= 400:
                    raise FetchError(
                        f"HTTP {response.status} from {url}",
                        status_code=response.status,
                        url=url,
                    )
                body = await response.content.read(self.max_content_bytes + 1)
                if len(body) > self.max_content_bytes:
                    raise FetchError(
                        f"Response from {url} exceeds {self.max_content_bytes} bytes",
                        status_code=response.status,
                        url=url,
                    )
                encoding = response.charset or "utf-8"
                self.logger.debug(f"Fetched {len(body)} bytes from {url} ({response.status})")
                return body.decode(encoding, errors="replace")
        except FetchError:
            self.metrics.increment_counter("fetch.errors")
            raise
        except asyncio.TimeoutError as e:
            self.metrics.increment_counter("fetch.errors")
            raise FetchError(f"Timed out after {timeout:g}s fetching {url}", url=url, timed_out=True) from e
        except aiohttp.ClientError as e:
            self.metrics.increment_counter("fetch.errors")
            raise FetchError(f"Failed to fetch {url}: {e}", url=url) from e
        except LookupError as e:
            self.metrics.increment_counter("fetch.errors")
            raise FetchError(f"Unknown response encoding from {url}: {e}", url=url) from e
