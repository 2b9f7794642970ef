"""HTTP request executor for the backend REST API."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from qsync.duration import parse_duration, to_seconds
from qsync.errors import HttpError, NetworkError
from qsync.keys import QueryKey, key_to_request
from qsync.types import Duration, QueryFn

logger = logging.getLogger(__name__)

UnauthorizedBehavior = Literal["raise", "return_none"]


def _encode_body(body: Any) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json")
    return body


def _decode_body(response: httpx.Response) -> Any:
    """Parse a response body as JSON, falling back to text."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpExecutor:
    """Issues authenticated JSON requests and raises typed failures.

    Cookies set by the server are kept in the client's jar and sent on every
    later request, so a session established by one call carries over to the
    next. There are no retries here; retry policy belongs to the caller.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        timeout: Duration = "30s",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url,
                headers={"Accept": "application/json", **(headers or {})},
                cookies=cookies,
                timeout=to_seconds(parse_duration(timeout)),
            )
            self._owns_client = True

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the parsed JSON body on 2xx."""
        method = method.upper()
        kwargs: dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = _encode_body(body)
        if params:
            kwargs["params"] = params

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            reason = str(e) or type(e).__name__
            logger.warning("%s %s transport failure: %s", method, path, reason)
            raise NetworkError(method, path, reason) from e

        if not response.is_success:
            raise HttpError(
                response.status_code,
                _decode_body(response),
                method=method,
                url=str(response.request.url),
            )
        return _decode_body(response)

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.request("POST", path, body)

    async def put(self, path: str, body: Any = None) -> Any:
        return await self.request("PUT", path, body)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request("PATCH", path, body)

    async def delete(self, path: str, body: Any = None) -> Any:
        return await self.request("DELETE", path, body)

    def query_fn(self, *, unauthorized: UnauthorizedBehavior = "raise") -> QueryFn:
        """Build a query function that GETs the URL a QueryKey stands for.

        With unauthorized="return_none" a 401 resolves to None instead of
        failing, for views that render a signed-out state.
        """
        if unauthorized not in ("raise", "return_none"):
            raise ValueError(f"Invalid unauthorized behavior: {unauthorized!r}")

        async def fetch(key: QueryKey) -> Any:
            path, params = key_to_request(key)
            try:
                return await self.get(path, params=params)
            except HttpError as e:
                if e.is_unauthorized and unauthorized == "return_none":
                    return None
                raise

        return fetch

    async def aclose(self) -> None:
        """Close the HTTP client (only if this executor created it)."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpExecutor:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
