"""
Tests for the /prodrun/ status endpoints.
"""

import asyncio
import gc
import os

import pytest
from aiohttp.test_utils import TestClient, TestServer

from prodrun.middleware import Req


@pytest.fixture
async def client(make_app):
    app = make_app()
    async with TestClient(TestServer(app.web_app)) as client:
        client.prodrun_app = app
        yield client


class TestDisabled:

    @pytest.mark.parametrize("path", [
        "/prodrun/status",
        "/prodrun/stack",
        "/prodrun/mem",
        "/prodrun/config",
        "/prodrun/config/runtime",
        "/prodrun/config/runtime/max_requests",
        "/prodrun/test",
        "/prodrun/metrics",
        "/prodrun/unknown",
    ])
    @pytest.mark.asyncio
    async def test_not_enabled(self, make_app, path):
        app = make_app(server={"enable_status_urls": False})
        async with TestClient(TestServer(app.web_app)) as client:
            resp = await client.get(path)
            assert resp.status == 404
            assert await resp.text() == "Not enabled\r\n"

    @pytest.mark.asyncio
    async def test_enabled_by_override(self, make_app):
        app = make_app(server={"enable_status_urls": False})
        async with TestClient(TestServer(app.web_app)) as client:
            app.config_loader.set_override("server", "enable_status_urls", True)
            resp = await client.get("/prodrun/status")
            assert resp.status == 200


class TestStatus:

    @pytest.mark.asyncio
    async def test_lists_in_flight_requests(self, make_app, wait_for):
        app = make_app()
        release = asyncio.Event()

        async def hold(req: Req):
            await release.wait()
            await req.send_text("done")

        app.handle_func("/hold", hold)

        async with TestClient(TestServer(app.web_app)) as client:
            pending = asyncio.ensure_future(client.get("/hold?x=1"))

            async def holding():
                return (await app.registry.stats_snapshot()).current_requests == 1
            assert await wait_for(holding)

            resp = await client.get("/prodrun/status")
            body = await resp.json()

            release.set()
            await (await pending).text()

        assert body["project_name"] == "testproj"
        assert body["app_name"] == "testapp"
        assert body["pid"] == os.getpid()
        assert body["num_workers"] >= 1
        urls = [r["url"] for r in body["requests"]]
        assert "/hold?x=1" in urls
        assert "/prodrun/status" in urls
        assert all(r["duration"] >= 0 for r in body["requests"])

        managers = body["managers"]
        assert managers["registry"]["healthy"] is True
        assert managers["registry"]["details"]["current_requests"] == 2
        assert managers["watchdog"]["details"]["state"] == "running"


class TestStack:

    @pytest.mark.asyncio
    async def test_dump(self, client):
        resp = await client.get("/prodrun/stack")
        assert resp.status == 200
        text = await resp.text()
        assert "Thread MainThread" in text
        assert "Task" in text


class TestMem:

    @pytest.mark.asyncio
    async def test_get(self, client):
        resp = await client.get("/prodrun/mem")
        body = await resp.json()
        assert body["memory"]["rss"] > 0
        assert "threshold" in body["gc"]

    @pytest.mark.asyncio
    async def test_post_gc_now(self, client):
        resp = await client.post("/prodrun/mem", data={"gc_now": "1"})
        text = await resp.text()
        assert text.startswith("Adjusting mem system\nRan GC, collected ")

    @pytest.mark.asyncio
    async def test_post_threshold(self, client):
        old = gc.get_threshold()
        try:
            resp = await client.post("/prodrun/mem", data={"gc_threshold": "1234"})
            text = await resp.text()
            assert f"Set GC threshold to [1234] was [{old[0]}]" in text
            assert gc.get_threshold()[0] == 1234
        finally:
            gc.set_threshold(*old)

    @pytest.mark.asyncio
    async def test_post_bad_value(self, client):
        resp = await client.post("/prodrun/mem", data={"gc_now": "yes please"})
        assert resp.status == 400


class TestConfig:

    @pytest.mark.asyncio
    async def test_whole_config(self, client):
        resp = await client.get("/prodrun/config")
        body = await resp.json()
        assert body["runtime"]["graceful_poll_msecs"] == 10
        assert body["server"]["hostname"] == "testhost"

    @pytest.mark.asyncio
    async def test_section_and_key(self, client):
        resp = await client.get("/prodrun/config/runtime")
        assert (await resp.json())["slow_req_secs"] == 10

        resp = await client.get("/prodrun/config/runtime/slow_req_secs")
        assert await resp.json() == 10

    @pytest.mark.asyncio
    async def test_unknown_section_and_key(self, client):
        resp = await client.get("/prodrun/config/nope")
        assert resp.status == 404
        assert await resp.text() == "No such section\r\n"

        resp = await client.get("/prodrun/config/runtime/nope")
        assert resp.status == 404
        assert await resp.text() == "No such key in section\r\n"

    @pytest.mark.asyncio
    async def test_put_override(self, client):
        resp = await client.put("/prodrun/config/runtime/max_requests", data="500")
        assert resp.status == 200
        assert await resp.json() == 500
        assert client.prodrun_app.config.runtime.max_requests == 500

    @pytest.mark.asyncio
    async def test_put_invalid_value(self, client):
        resp = await client.put("/prodrun/config/runtime/max_requests", data="many")
        assert resp.status == 400
        assert client.prodrun_app.config.runtime.max_requests == 0

    @pytest.mark.asyncio
    async def test_put_needs_key(self, client):
        resp = await client.put("/prodrun/config/runtime", data="1")
        assert resp.status == 400
        assert await resp.text() == "No key in url\r\n"


class TestTestEndpoint:

    @pytest.mark.asyncio
    async def test_slow_allocating_request(self, client):
        resp = await client.get("/prodrun/test?secs=0.01&kbytes=4")
        assert await resp.text() == "Slow request took additional 0.01 secs and allocated additional 4 KB\n"

    @pytest.mark.asyncio
    async def test_defaults(self, client):
        resp = await client.get("/prodrun/test")
        assert resp.status == 200


class TestMetricsEndpoint:

    @pytest.mark.asyncio
    async def test_counts_statuses(self, client):
        await client.get("/prodrun/status")
        await client.get("/prodrun/unknown")

        resp = await client.get("/prodrun/metrics")
        body = await resp.json()
        counters = body["counters"]
        prefix = "testproj.testapp.testhost"
        assert counters[f"{prefix}.http_status.200"] >= 1
        assert counters[f"{prefix}.http_status.404"] == 1
        assert body["gauges"][f"{prefix}.current_http_reqs"] >= 1
