"""Tests for HttpExecutor using mocked HTTP responses."""

import json

import httpx
import pydantic
import pytest
import respx

from qsync import HttpError, HttpExecutor, NetworkError, QueryKey

BASE_URL = "https://api.test.dev"


class NewBooking(pydantic.BaseModel):
    walk_id: int
    note: str | None = None


@pytest.fixture
async def executor():
    """Create an HttpExecutor against the mocked API."""
    http = HttpExecutor(BASE_URL)
    yield http
    await http.aclose()


class TestRequest:
    """Tests for request() and the verb helpers."""

    @respx.mock
    async def test_get_returns_json(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/walks").mock(
            return_value=httpx.Response(200, json=[{"id": 1}])
        )

        assert await executor.get("/api/walks") == [{"id": 1}]

    @respx.mock
    async def test_sends_json_accept_header(self, executor: HttpExecutor) -> None:
        route = respx.get(f"{BASE_URL}/api/walks").mock(
            return_value=httpx.Response(200, json=[])
        )

        await executor.get("/api/walks")
        assert route.calls[0].request.headers["accept"] == "application/json"

    @respx.mock
    async def test_post_sends_json_body(self, executor: HttpExecutor) -> None:
        route = respx.post(f"{BASE_URL}/api/bookings").mock(
            return_value=httpx.Response(201, json={"id": 9})
        )

        result = await executor.post("/api/bookings", {"walk_id": 3})
        assert result == {"id": 9}
        assert json.loads(route.calls[0].request.content) == {"walk_id": 3}

    @respx.mock
    async def test_pydantic_body_is_dumped(self, executor: HttpExecutor) -> None:
        route = respx.post(f"{BASE_URL}/api/bookings").mock(
            return_value=httpx.Response(201, json={"id": 9})
        )

        await executor.post("/api/bookings", NewBooking(walk_id=3))
        assert json.loads(route.calls[0].request.content) == {"walk_id": 3, "note": None}

    @respx.mock
    async def test_empty_body_is_none(self, executor: HttpExecutor) -> None:
        respx.delete(f"{BASE_URL}/api/bookings/9").mock(return_value=httpx.Response(204))

        assert await executor.delete("/api/bookings/9") is None

    @respx.mock
    async def test_non_json_body_is_text(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/health").mock(
            return_value=httpx.Response(200, text="ok")
        )

        assert await executor.get("/api/health") == "ok"

    @respx.mock
    async def test_put_and_patch(self, executor: HttpExecutor) -> None:
        put = respx.put(f"{BASE_URL}/api/walks/1").mock(
            return_value=httpx.Response(200, json={"id": 1})
        )
        patch = respx.patch(f"{BASE_URL}/api/walks/1").mock(
            return_value=httpx.Response(200, json={"id": 1})
        )

        await executor.put("/api/walks/1", {"status": "done"})
        await executor.patch("/api/walks/1", {"status": "done"})
        assert put.called and patch.called


class TestErrors:
    """Tests for failure classification."""

    @respx.mock
    async def test_non_2xx_raises_http_error(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/walks/99").mock(
            return_value=httpx.Response(404, json={"error": "Walk not found"})
        )

        with pytest.raises(HttpError) as exc_info:
            await executor.get("/api/walks/99")

        error = exc_info.value
        assert error.status == 404
        assert error.body == {"error": "Walk not found"}
        assert error.method == "GET"
        assert error.url == f"{BASE_URL}/api/walks/99"
        assert str(error) == "404: Walk not found"
        assert error.is_client_error

    @respx.mock
    async def test_text_error_body(self, executor: HttpExecutor) -> None:
        respx.post(f"{BASE_URL}/api/bookings").mock(
            return_value=httpx.Response(502, text="Bad Gateway")
        )

        with pytest.raises(HttpError, match="502: Bad Gateway") as exc_info:
            await executor.post("/api/bookings", {})
        assert exc_info.value.is_server_error

    @respx.mock
    async def test_transport_failure_raises_network_error(
        self, executor: HttpExecutor
    ) -> None:
        respx.get(f"{BASE_URL}/api/walks").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        with pytest.raises(NetworkError) as exc_info:
            await executor.get("/api/walks")
        assert exc_info.value.reason == "connection refused"
        assert exc_info.value.method == "GET"


class TestCookies:
    """Tests for credential propagation."""

    @respx.mock
    async def test_initial_cookies_sent(self) -> None:
        route = respx.get(f"{BASE_URL}/api/auth/user").mock(
            return_value=httpx.Response(200, json={"id": "u1"})
        )

        async with HttpExecutor(BASE_URL, cookies={"sid": "abc"}) as executor:
            await executor.get("/api/auth/user")
        assert route.calls[0].request.headers["cookie"] == "sid=abc"

    @respx.mock
    async def test_session_cookie_persisted(self, executor: HttpExecutor) -> None:
        respx.post(f"{BASE_URL}/api/login").mock(
            return_value=httpx.Response(
                200, json={"ok": True}, headers={"set-cookie": "sid=xyz; Path=/"}
            )
        )
        route = respx.get(f"{BASE_URL}/api/auth/user").mock(
            return_value=httpx.Response(200, json={"id": "u1"})
        )

        await executor.post("/api/login", {"email": "a@b.c"})
        await executor.get("/api/auth/user")
        assert executor.cookies["sid"] == "xyz"
        assert route.calls[0].request.headers["cookie"] == "sid=xyz"

    @respx.mock
    async def test_custom_headers(self) -> None:
        route = respx.get(f"{BASE_URL}/api/walks").mock(
            return_value=httpx.Response(200, json=[])
        )

        async with HttpExecutor(BASE_URL, headers={"X-Client": "kiosk"}) as executor:
            await executor.get("/api/walks")
        assert route.calls[0].request.headers["x-client"] == "kiosk"


class TestQueryFn:
    """Tests for the key-derived query function."""

    @respx.mock
    async def test_object_segment_becomes_query_params(self, executor: HttpExecutor) -> None:
        route = respx.get(f"{BASE_URL}/api/templates").mock(
            return_value=httpx.Response(200, json=[{"id": 1}])
        )

        fetch = executor.query_fn()
        result = await fetch(QueryKey("/api/templates", {"category": "welcome"}))
        assert result == [{"id": 1}]
        assert route.calls[0].request.url.params["category"] == "welcome"

    @respx.mock
    async def test_scalar_segments_join_path(self, executor: HttpExecutor) -> None:
        route = respx.get(f"{BASE_URL}/api/walks/3").mock(
            return_value=httpx.Response(200, json={"id": 3})
        )

        await executor.query_fn()(QueryKey("/api/walks", 3))
        assert route.called

    @respx.mock
    async def test_unauthorized_raises_by_default(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/auth/user").mock(
            return_value=httpx.Response(401, json={"message": "Unauthorized"})
        )

        with pytest.raises(HttpError) as exc_info:
            await executor.query_fn()(QueryKey("/api/auth/user"))
        assert exc_info.value.is_unauthorized

    @respx.mock
    async def test_unauthorized_returns_none(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/auth/user").mock(
            return_value=httpx.Response(401, json={"message": "Unauthorized"})
        )

        fetch = executor.query_fn(unauthorized="return_none")
        assert await fetch(QueryKey("/api/auth/user")) is None

    @respx.mock
    async def test_return_none_only_covers_401(self, executor: HttpExecutor) -> None:
        respx.get(f"{BASE_URL}/api/auth/user").mock(
            return_value=httpx.Response(403, json={"message": "Forbidden"})
        )

        fetch = executor.query_fn(unauthorized="return_none")
        with pytest.raises(HttpError, match="403: Forbidden"):
            await fetch(QueryKey("/api/auth/user"))

    async def test_rejects_unknown_behavior(self, executor: HttpExecutor) -> None:
        with pytest.raises(ValueError, match="unauthorized"):
            executor.query_fn(unauthorized="ignore")  # type: ignore[arg-type]


class TestOwnership:
    """Tests for client lifecycle."""

    async def test_injected_client_is_not_closed(self) -> None:
        client = httpx.AsyncClient(base_url=BASE_URL)
        executor = HttpExecutor(client=client)
        await executor.aclose()
        assert not client.is_closed
        await client.aclose()

    async def test_owned_client_is_closed(self) -> None:
        executor = HttpExecutor(BASE_URL)
        await executor.aclose()
        assert executor._client.is_closed
