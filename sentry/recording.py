#!/usr/bin/env python3
"""
Recording controller (on/off state machine for disk capture).

- set_on() launches one record pipeline unless one is already running.
- set_off() clears the slot before stopping the engine, so a failed stop
  still leaves the controller Off and a later set_on() can start over.
- Both transitions are idempotent and serialized by a single lock.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from sentry.capture_engine import EngineHandle
from sentry.pipeline_spec import CameraSettings, build_record_spec
from sentry.values import OnOff

DEFAULT_RECORDING_FILENAME = "recording.ogv"


class RecordingController:
    def __init__(
        self,
        launcher: Any,
        storage_root: str | os.PathLike[str],
        *,
        filename: str = DEFAULT_RECORDING_FILENAME,
        camera: CameraSettings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._launcher = launcher
        self._storage_root = Path(storage_root)
        self._filename = filename
        self._camera = camera
        self._log = logger or logging.getLogger("recording")
        self._lock = threading.Lock()
        self._handle: Optional[EngineHandle] = None

    @property
    def destination(self) -> Path:
        return self._storage_root / self._filename

    def set_on(self) -> None:
        with self._lock:
            if self._handle is not None:
                return
            spec = build_record_spec(self.destination, camera=self._camera)
            self._handle = self._launcher.launch(spec)
        self._log.info("Recording started -> %s", spec.location)

    def set_off(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
            if handle is None:
                return
            handle.stop()
        self._log.info("Recording stopped")

    def set(self, value: OnOff) -> None:
        if value is OnOff.ON:
            self.set_on()
        else:
            self.set_off()

    def status(self) -> OnOff:
        with self._lock:
            return OnOff.ON if self._handle is not None else OnOff.OFF

    def engine_status(self) -> str:
        with self._lock:
            handle = self._handle
        if handle is None:
            return OnOff.OFF.value.lower()
        return handle.status().value
