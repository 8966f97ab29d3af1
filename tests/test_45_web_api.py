from __future__ import annotations

import asyncio
import json
import urllib.request

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from sentry import web_api
from sentry.adapter import ADAPTER_ID, CHANNEL_LIVE_STREAM, CHANNEL_RECORDING, CaptureResourceManager
from sentry.adapter_manager import AdapterManager
from sentry.capture_engine import EngineState, reserve_port


class DummyHandle:
    def __init__(self, spec, port):
        self.spec = spec
        self.role = spec.role
        self.port = port
        self.stopped = False

    def stop(self):
        self.stopped = True

    def status(self):
        return EngineState.STOPPED if self.stopped else EngineState.RUNNING


class DummyLauncher:
    def __init__(self):
        self.handles = []

    def launch(self, spec):
        handle = DummyHandle(spec, 41000 if spec.role == "live" else None)
        self.handles.append(handle)
        return handle


def _manager(tmp_path):
    manager = AdapterManager()
    CaptureResourceManager.init(manager, tmp_path, DummyLauncher())
    return manager


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


def test_fetch_and_send_round_trip(tmp_path):
    async def runner():
        client, server = await _start_client(web_api.build_app(_manager(tmp_path)))
        try:
            resp = await client.put(
                "/api/channels/fetch",
                json={"channels": [CHANNEL_LIVE_STREAM, CHANNEL_RECORDING, "bogus"]},
            )
            assert resp.status == 200
            results = (await resp.json())["results"]
            assert results[CHANNEL_LIVE_STREAM] == {"ok": True, "value": {"port": 41000}}
            assert results[CHANNEL_RECORDING] == {"ok": True, "value": "Off"}
            assert results["bogus"]["ok"] is False
            assert results["bogus"]["error"]["kind"] == "OperationNotSupported"

            resp = await client.put("/api/channels/send", json={"values": {CHANNEL_RECORDING: "On"}})
            assert resp.status == 200
            assert (await resp.json())["results"][CHANNEL_RECORDING] == {"ok": True, "value": None}

            resp = await client.put(
                "/api/channels/fetch", json={"channels": [CHANNEL_RECORDING]}
            )
            assert (await resp.json())["results"][CHANNEL_RECORDING]["value"] == "On"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_send_reports_type_mismatch(tmp_path):
    async def runner():
        client, server = await _start_client(web_api.build_app(_manager(tmp_path)))
        try:
            resp = await client.put(
                "/api/channels/send",
                json={"values": {CHANNEL_RECORDING: 42, CHANNEL_LIVE_STREAM: {"port": 1}}},
            )
            results = (await resp.json())["results"]
            assert results[CHANNEL_RECORDING]["error"]["kind"] == "ValueTypeMismatch"
            assert results[CHANNEL_LIVE_STREAM]["error"]["kind"] == "OperationNotSupported"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_malformed_bodies_are_rejected(tmp_path):
    async def runner():
        client, server = await _start_client(web_api.build_app(_manager(tmp_path)))
        try:
            resp = await client.put("/api/channels/fetch", data="not json")
            assert resp.status == 400
            resp = await client.put("/api/channels/fetch", json={"channels": "nope"})
            assert resp.status == 400
            resp = await client.put("/api/channels/send", json=[CHANNEL_RECORDING])
            assert resp.status == 400
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_channel_listing_and_health(tmp_path):
    async def runner():
        client, server = await _start_client(web_api.build_app(_manager(tmp_path)))
        try:
            resp = await client.get("/api/channels")
            channels = (await resp.json())["channels"]
            assert [channel["id"] for channel in channels] == sorted([CHANNEL_LIVE_STREAM, CHANNEL_RECORDING])

            resp = await client.get("/healthz")
            payload = await resp.json()
            assert payload["ok"] is True
            assert payload["adapters"][ADAPTER_ID]["live_stream"] == "not-started"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_api_runs_in_background_thread(tmp_path):
    port = reserve_port("127.0.0.1")
    handle = web_api.start_api_in_thread(_manager(tmp_path), "127.0.0.1", port)
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/healthz", timeout=5) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
        assert payload["ok"] is True
    finally:
        handle.stop()
    assert not handle.thread.is_alive()
