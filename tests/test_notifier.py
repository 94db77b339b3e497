"""Tests for the HTTP notifier."""

import socket

import pytest
import pytest_asyncio
from aiohttp import web

from ctxhook.config import NotifierConfig
from ctxhook.notifier import Notifier


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def endpoint():
    received = []

    async def handle(request):
        received.append(await request.json())
        status = 500 if request.query.get("fail") else 204
        return web.Response(status=status)

    app = web.Application()
    app.router.add_post("/notify", handle)
    runner = web.AppRunner(app)
    await runner.setup()
    port = free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    yield f"http://127.0.0.1:{port}/notify", received
    await runner.cleanup()


class TestNotifier:
    """Test fire-and-forget notifications."""

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        notifier = Notifier()
        assert not notifier.enabled
        assert notifier.notify("hello") is None
        assert await notifier.send("hello") is False

    @pytest.mark.asyncio
    async def test_send(self, endpoint):
        url, received = endpoint
        notifier = Notifier(NotifierConfig(url=url))

        assert await notifier.send("Stage aborted", title="PreToolUse") is True
        assert received == [{"message": "Stage aborted", "title": "PreToolUse"}]

    @pytest.mark.asyncio
    async def test_notify_and_drain(self, endpoint):
        url, received = endpoint
        notifier = Notifier(NotifierConfig(url=url))

        notifier.notify("one")
        notifier.notify("two")
        await notifier.drain()

        assert sorted(item["message"] for item in received) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self, endpoint):
        url, _ = endpoint
        notifier = Notifier(NotifierConfig(url=url + "?fail=1"))
        assert await notifier.send("x") is False

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_returns_false(self):
        notifier = Notifier(NotifierConfig(url=f"http://127.0.0.1:{free_port()}/notify", timeout=1))
        assert await notifier.send("x") is False
