"""
Tests for the outbound provider HTTP policy (timeouts and retries).
"""

import httpx
import pytest

from connectors.exceptions import ProviderApiError
from connectors.http import ProviderHttp


class Script:
    """Replays a list of responses / exceptions, one per request."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        return httpx.Response(step, json={})


def _http(script: Script, max_retries: int = 2) -> ProviderHttp:
    return ProviderHttp(
        "test",
        max_retries=max_retries,
        backoff_seconds=0,
        transport=httpx.MockTransport(script),
    )


class TestGet:
    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        script = Script(503, 429, 200)
        async with _http(script) as http:
            resp = await http.get("https://p.test/x")
        assert resp.status_code == 200
        assert script.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        script = Script(502)
        async with _http(script, max_retries=2) as http:
            resp = await http.get("https://p.test/x")
        assert resp.status_code == 502
        assert script.calls == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        script = Script(401, 200)
        async with _http(script) as http:
            resp = await http.get("https://p.test/x")
        assert resp.status_code == 401
        assert script.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_raised(self):
        script = Script(httpx.ReadTimeout("slow"))
        async with _http(script, max_retries=1) as http:
            with pytest.raises(ProviderApiError) as exc_info:
                await http.get("https://p.test/x")
        assert script.calls == 2
        assert exc_info.value.provider_name == "test"


class TestPost:
    @pytest.mark.asyncio
    async def test_token_post_not_retried_on_server_error(self):
        script = Script(503, 200)
        async with _http(script) as http:
            resp = await http.post_form("https://p.test/token", {"code": "abc"})
        assert resp.status_code == 503
        assert script.calls == 1

    @pytest.mark.asyncio
    async def test_token_post_not_retried_after_read_timeout(self):
        script = Script(httpx.ReadTimeout("slow"), 200)
        async with _http(script) as http:
            with pytest.raises(ProviderApiError):
                await http.post_form("https://p.test/token", {"code": "abc"})
        assert script.calls == 1

    @pytest.mark.asyncio
    async def test_token_post_retried_when_never_sent(self):
        script = Script(httpx.ConnectError("refused"), 200)
        async with _http(script) as http:
            resp = await http.post_form("https://p.test/token", {"code": "abc"})
        assert resp.status_code == 200
        assert script.calls == 2

    @pytest.mark.asyncio
    async def test_idempotent_post_retries_server_errors(self):
        script = Script(500, 200)
        async with _http(script) as http:
            resp = await http.post_form("https://p.test/revoke", {"token": "t"}, idempotent=True)
        assert resp.status_code == 200
        assert script.calls == 2


@pytest.mark.asyncio
async def test_request_outside_context_manager():
    http = ProviderHttp("test")
    with pytest.raises(RuntimeError):
        await http.get("https://p.test/x")
