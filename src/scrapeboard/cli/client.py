"""Small aiohttp client the CLI uses to talk to a running server."""

from typing import Any, Dict, Mapping, Optional

import aiohttp

from ..foundation.config import get_config_manager
from ..foundation.errors import ErrorCategory, ScrapeboardError


class ApiError(ScrapeboardError):
    """Error reported by the server, or failure to reach it."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        payload = payload or {}
        super().__init__(
            message,
            category=ErrorCategory.FETCH,
            error_code=payload.get("code") or "API_ERROR",
            details=payload.get("details") or {},
        )
        self.status = status
        self.payload = payload


def default_server_url() -> str:
    config = get_config_manager()
    host = config.get_setting("api.host", "127.0.0.1")
    port = config.get_setting("api.port", 8080)
    return f"http://{host}:{port}"


class ApiClient:
    """JSON client for the Scrapeboard HTTP API."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = (base_url or default_server_url()).rstrip("/")
        self.timeout = timeout
        self._external_session = session
        self._own_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _session(self) -> aiohttp.ClientSession:
        if self._external_session is not None:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            self._own_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._own_session

    async def close(self) -> None:
        if self._own_session is not None and not self._own_session.closed:
            await self._own_session.close()
        self._own_session = None

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            ApiError: On connection failures and error responses
        """
        query = {key: str(value) for key, value in (params or {}).items() if value is not None}
        try:
            async with self._session().request(method, self.url(path), params=query, json=json_body) as response:
                if response.content_type == "application/json":
                    data = await response.json()
                else:
                    data = await response.text()
                if response.status >= 400:
                    error = data.get("error", {}) if isinstance(data, dict) else {}
                    message = error.get("message") or f"HTTP {response.status}"
                    raise ApiError(message, status=response.status, payload=error)
                return data
        except aiohttp.ClientConnectionError as e:
            raise ApiError(f"Cannot reach Scrapeboard server at {self.base_url}: {e}")

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_body: Any = None, **params: Any) -> Any:
        return await self.request("POST", path, params=params, json_body=json_body)

    async def put(self, path: str, json_body: Any = None) -> Any:
        return await self.request("PUT", path, json_body=json_body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def ws_connect(self, path: str, **params: Any) -> aiohttp.ClientWebSocketResponse:
        query = {key: str(value) for key, value in params.items() if value is not None}
        try:
            return await self._session().ws_connect(self.url(path), params=query, heartbeat=30.0)
        except aiohttp.ClientError as e:
            raise ApiError(f"Cannot open log stream at {self.base_url}: {e}")
