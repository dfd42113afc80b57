"""Tests for temporary token minting and the auth retry limit."""

import pytest
from aiohttp import test_utils, web

from coach_engine.config import LinkConfig, ServiceConfig
from coach_engine.errors import AuthError
from coach_engine.token_provider import RealtimeTokenProvider, fetch_token_with_retry

from fakes import FakeTokenProvider, RecordingSleep


async def start_token_server(status, body, seen):
    async def handler(request):
        seen.append((request.headers.get("authorization"), await request.json()))
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_post("/v2/realtime/token", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_token_minted_with_api_key():
    seen = []
    server = await start_token_server(200, {"token": "temp-token"}, seen)
    try:
        config = ServiceConfig(token_url=str(server.make_url("/v2/realtime/token")))
        token = await RealtimeTokenProvider("key-123", config).fetch_token()
    finally:
        await server.close()

    assert token == "temp-token"
    assert seen == [("key-123", {"expires_in": 300})]


@pytest.mark.asyncio
async def test_rejected_key_is_auth_error():
    server = await start_token_server(401, {"error": "Authentication error"}, [])
    try:
        config = ServiceConfig(token_url=str(server.make_url("/v2/realtime/token")))
        with pytest.raises(AuthError, match="401"):
            await RealtimeTokenProvider("bad-key", config).fetch_token()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_response_without_token_is_auth_error():
    server = await start_token_server(200, {"unexpected": True}, [])
    try:
        config = ServiceConfig(token_url=str(server.make_url("/v2/realtime/token")))
        with pytest.raises(AuthError, match="did not contain"):
            await RealtimeTokenProvider("key", config).fetch_token()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_missing_api_key_is_auth_error():
    with pytest.raises(AuthError, match="ASSEMBLYAI_API_KEY"):
        await RealtimeTokenProvider(None).fetch_token()


@pytest.mark.asyncio
async def test_retry_uses_fixed_delay_then_gives_up():
    provider = FakeTokenProvider(failures=5)
    sleep = RecordingSleep()
    with pytest.raises(AuthError, match="after 3 attempts"):
        await fetch_token_with_retry(provider, LinkConfig(), sleep=sleep)
    assert provider.calls == 3
    assert sleep.delays == [0.5, 0.5]


@pytest.mark.asyncio
async def test_retry_returns_first_successful_token():
    provider = FakeTokenProvider(failures=1, token="second-time-lucky")
    sleep = RecordingSleep()
    assert await fetch_token_with_retry(provider, LinkConfig(), sleep=sleep) == "second-time-lucky"
    assert provider.calls == 2
    assert sleep.delays == [0.5]
