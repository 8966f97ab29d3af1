#!/usr/bin/env python3
"""
Built-in camera adapter (capture resource manager).

Exposes the camera as two channels:
- live stream: fetch returns a StreamDescriptor ({"port": N}) for an
  Ogg/Theora TCP stream, started on first use and shared afterwards.
- recording: fetch returns On/Off, send toggles recording to a fixed file
  under the storage directory.

Each batched request is answered entry by entry; one failing channel never
affects the others. Live view and recording keep independent locks, so the
two roles never wait on each other. Both may compete for the same physical
camera when active together; whether that works depends on the backend.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

from sentry.adapter_manager import Channel, Service
from sentry.capture_engine import CaptureError, build_launcher
from sentry.live_session import LiveStreamSession
from sentry.pipeline_spec import DEFAULT_LIVE_HOST, CameraSettings
from sentry.recording import DEFAULT_RECORDING_FILENAME, RecordingController
from sentry.values import (
    OP_FETCH,
    OP_SEND,
    OnOff,
    OperationNotSupported,
    OpResult,
    TaxonomyError,
)

ADAPTER_ID = "sentry@foxlink.mozilla.org"
SERVICE_ID = "service@foxlink.mozilla.org/camera"
CHANNEL_LIVE_STREAM = "sentry@foxlink.mozilla.org/livestream/html5"
CHANNEL_RECORDING = "sentry@foxlink.mozilla.org/recording/control"

FEATURE_LIVE_STREAM = "camera/live-stream-html5"
FEATURE_RECORDING = "camera/record"
VALUE_KIND_STREAM = "stream-descriptor"
VALUE_KIND_ON_OFF = "on-off"

VERSION = (0, 1, 0, 0)


class CaptureResourceManager:
    name = "Built-in camera"
    vendor = "Mozilla"
    version = VERSION

    def __init__(
        self,
        storage_root: str | os.PathLike[str],
        launcher: Any,
        *,
        recording_filename: str = DEFAULT_RECORDING_FILENAME,
        live_host: str = DEFAULT_LIVE_HOST,
        camera: CameraSettings | None = None,
        adapter_id: str = ADAPTER_ID,
        live_channel_id: str = CHANNEL_LIVE_STREAM,
        recording_channel_id: str = CHANNEL_RECORDING,
        logger: logging.Logger | None = None,
    ) -> None:
        self.id = adapter_id
        self.live_channel_id = live_channel_id
        self.recording_channel_id = recording_channel_id
        self.storage_root = Path(storage_root)
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self._log = logger or logging.getLogger("sentry.adapter")
        self.live = LiveStreamSession(launcher, host=live_host, camera=camera)
        self.recording = RecordingController(
            launcher,
            self.storage_root,
            filename=recording_filename,
            camera=camera,
        )

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], *, launcher: Any = None) -> "CaptureResourceManager":
        capture_cfg = cfg.get("capture", {})
        paths_cfg = cfg.get("paths", {})
        if launcher is None:
            launcher = build_launcher(capture_cfg)
        return cls(
            paths_cfg.get("storage_dir") or "recordings",
            launcher,
            recording_filename=paths_cfg.get("recording_filename") or DEFAULT_RECORDING_FILENAME,
            live_host=capture_cfg.get("host") or DEFAULT_LIVE_HOST,
            camera=CameraSettings.from_config(cfg.get("camera")),
        )

    @classmethod
    def init(cls, manager: Any, storage_root: str | os.PathLike[str], launcher: Any, **kwargs: Any) -> "CaptureResourceManager":
        adapter = cls(storage_root, launcher, **kwargs)
        adapter.register(manager)
        return adapter

    def register(self, manager: Any) -> None:
        manager.add_adapter(self)
        manager.add_service(Service(id=SERVICE_ID, adapter=self.id))
        manager.add_channel(
            Channel(
                id=self.live_channel_id,
                adapter=self.id,
                service=SERVICE_ID,
                feature=FEATURE_LIVE_STREAM,
                supports_fetch=VALUE_KIND_STREAM,
            )
        )
        manager.add_channel(
            Channel(
                id=self.recording_channel_id,
                adapter=self.id,
                service=SERVICE_ID,
                feature=FEATURE_RECORDING,
                supports_fetch=VALUE_KIND_ON_OFF,
                supports_send=VALUE_KIND_ON_OFF,
            )
        )

    # --- Batched requests ---
    def fetch_many(self, ids: Iterable[str]) -> dict[str, OpResult]:
        results: dict[str, OpResult] = {}
        for channel_id in ids:
            results[channel_id] = self._fetch_one(channel_id)
        return results

    def _fetch_one(self, channel_id: str) -> OpResult:
        try:
            if channel_id == self.live_channel_id:
                return OpResult(value=self.live.fetch())
            if channel_id == self.recording_channel_id:
                return OpResult(value=self.recording.status())
        except CaptureError as exc:
            self._log.warning("Fetch %s failed: %s", channel_id, exc)
            return OpResult(error=exc)
        return OpResult(error=OperationNotSupported(OP_FETCH, channel_id))

    def send_many(self, assignments: Mapping[str, Any]) -> dict[str, OpResult]:
        results: dict[str, OpResult] = {}
        for channel_id, raw_value in assignments.items():
            results[channel_id] = self._send_one(channel_id, raw_value)
        return results

    def _send_one(self, channel_id: str, raw_value: Any) -> OpResult:
        if channel_id != self.recording_channel_id:
            return OpResult(error=OperationNotSupported(OP_SEND, channel_id))
        try:
            self.recording.set(OnOff.parse(raw_value))
        except (CaptureError, TaxonomyError) as exc:
            self._log.warning("Send %s=%r failed: %s", channel_id, raw_value, exc)
            return OpResult(error=exc)
        return OpResult()

    # --- Diagnostics & shutdown ---
    def status(self) -> dict[str, Any]:
        return {
            "live_stream": self.live.status(),
            "recording": self.recording.status().value,
            "recording_engine": self.recording.engine_status(),
            "storage_root": str(self.storage_root),
        }

    def shutdown(self) -> None:
        for label, stop in (("recording", self.recording.set_off), ("live stream", self.live.close)):
            try:
                stop()
            except CaptureError as exc:
                self._log.error("Failed to stop %s during shutdown: %s", label, exc)
