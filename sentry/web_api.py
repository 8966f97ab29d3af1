#!/usr/bin/env python3
"""
HTTP front end for the adapter manager (aiohttp).

Routes:
  GET  /healthz              -> adapter status summary
  GET  /api/channels         -> registered channels
  PUT  /api/channels/fetch   -> {"channels": [id, ...]}
  PUT  /api/channels/send    -> {"values": {id: value, ...}}

Fetch/send may block while a capture engine starts, so they run on the
loop's default executor.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from aiohttp import web

from sentry.adapter_manager import AdapterManager
from sentry.values import OpResult

MANAGER_KEY = web.AppKey("manager", AdapterManager)
API_EXECUTOR_MAX_WORKERS = 4


def _results_payload(results: dict[str, OpResult]) -> dict[str, Any]:
    return {"results": {channel_id: result.to_json() for channel_id, result in results.items()}}


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def healthz(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    loop = asyncio.get_running_loop()
    status = await loop.run_in_executor(None, manager.status)
    return web.json_response({"ok": True, "adapters": status})


async def list_channels(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    return web.json_response({"channels": [channel.to_json() for channel in manager.channels()]})


async def fetch_channels(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    ids = payload.get("channels") if isinstance(payload, dict) else None
    if not isinstance(ids, list) or not all(isinstance(entry, str) for entry in ids):
        return _bad_request("expected {\"channels\": [<channel id>, ...]}")
    manager = request.app[MANAGER_KEY]
    loop = asyncio.get_running_loop()
    results = await loop.run_in_executor(None, manager.fetch_values, ids)
    return web.json_response(_results_payload(results))


async def send_channels(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    values = payload.get("values") if isinstance(payload, dict) else None
    if not isinstance(values, dict):
        return _bad_request("expected {\"values\": {<channel id>: <value>, ...}}")
    manager = request.app[MANAGER_KEY]
    loop = asyncio.get_running_loop()
    results = await loop.run_in_executor(None, manager.send_values, values)
    return web.json_response(_results_payload(results))


def build_app(manager: AdapterManager) -> web.Application:
    app = web.Application()
    app[MANAGER_KEY] = manager
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/api/channels", list_channels)
    app.router.add_put("/api/channels/fetch", fetch_channels)
    app.router.add_put("/api/channels/send", send_channels)
    return app


class ApiHandle:
    """Handle returned by start_api_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner):
        self.thread = thread
        self.loop = loop
        self.runner = runner

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("web_api")
        log.info("Stopping web_api ...")
        if self.loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:  # noqa: BLE001 - shutdown diagnostics only
                log.warning("Error awaiting runner cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web_api stopped")


def start_api_in_thread(
    manager: AdapterManager,
    host: str = "0.0.0.0",
    port: int = 8080,
    *,
    access_log: bool = False,
) -> ApiHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    log = logging.getLogger("web_api")

    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=API_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="web_api_io",
    )
    runner_box: dict[str, web.AppRunner] = {}
    failure_box: dict[str, BaseException] = {}

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        app = build_app(manager)
        runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as exc:
            failure_box["error"] = exc
            loop.run_until_complete(runner.cleanup())
            executor.shutdown(wait=False)
            return
        runner_box["runner"] = runner
        log.info("web_api started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception as exc:  # noqa: BLE001 - shutdown diagnostics only
                log.debug("Runner cleanup after loop stop failed: %r", exc)
            executor.shutdown(wait=True, cancel_futures=True)

    t = threading.Thread(target=_run, name="web_api", daemon=True)
    t.start()

    while "runner" not in runner_box:
        if "error" in failure_box:
            raise failure_box["error"]
        if not t.is_alive():
            raise RuntimeError("web_api thread exited during startup")
        time.sleep(0.05)

    return ApiHandle(t, loop, runner_box["runner"])


def cli_main(argv: list[str] | None = None) -> int:
    # Imported here so importing this module never reads configuration.
    from sentry.adapter import CaptureResourceManager
    from sentry.config import get_cfg

    parser = argparse.ArgumentParser(description="Built-in camera adapter HTTP API.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: INFO, DEBUG in dev mode).")
    args = parser.parse_args(argv)

    cfg = get_cfg()
    level_name = args.log_level or ("DEBUG" if cfg.get("logging", {}).get("dev_mode") else "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("web_api")

    server_cfg = cfg.get("web_server", {})
    host = args.host or server_cfg.get("listen_host") or "0.0.0.0"
    port = args.port or int(server_cfg.get("listen_port") or 8080)

    manager = AdapterManager()
    try:
        adapter = CaptureResourceManager.from_config(cfg)
    except (OSError, ValueError) as exc:
        log.error("Unable to initialise camera adapter: %s", exc)
        return 1
    adapter.register(manager)

    try:
        handle = start_api_in_thread(manager, host, port, access_log=args.access_log)
    except OSError as exc:
        log.error("Unable to start web_api on %s:%s: %s", host, port, exc)
        manager.shutdown()
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        handle.stop()
        manager.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
