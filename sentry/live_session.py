#!/usr/bin/env python3
"""
Live view session (lazy, shared encoder).

Why this file exists:
- Starting the camera pipeline is expensive, so nothing runs until the
  first client asks for the live stream.
- Every later fetch reuses the same engine and descriptor; we never run
  two live encoders side by side.

Known limitation: there is no client accounting, so once started the live
engine keeps running until process shutdown calls close().
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from sentry.capture_engine import CaptureError, EngineHandle
from sentry.pipeline_spec import DEFAULT_LIVE_HOST, CameraSettings, build_live_spec
from sentry.values import StreamDescriptor

STATUS_NOT_STARTED = "not-started"


class LiveStreamSession:
    def __init__(
        self,
        launcher: Any,
        *,
        host: str = DEFAULT_LIVE_HOST,
        camera: CameraSettings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._launcher = launcher
        self._host = host
        self._camera = camera
        self._log = logger or logging.getLogger("live_session")
        self._lock = threading.Lock()
        self._descriptor: Optional[StreamDescriptor] = None
        self._handle: Optional[EngineHandle] = None

    def fetch(self) -> StreamDescriptor:
        with self._lock:
            if self._descriptor is not None:
                return self._descriptor
            handle = self._launcher.launch(build_live_spec(host=self._host, camera=self._camera))
            if handle.port is None:
                handle.stop()
                raise CaptureError("live engine started without a bound port")
            descriptor = StreamDescriptor(handle.port)
            self._handle = handle
            self._descriptor = descriptor
        self._log.info("Live stream available on port %s", descriptor.port)
        return descriptor

    @property
    def active(self) -> bool:
        with self._lock:
            return self._handle is not None

    def status(self) -> str:
        with self._lock:
            handle = self._handle
        if handle is None:
            return STATUS_NOT_STARTED
        return handle.status().value

    def close(self) -> None:
        """Stop the live engine. Only meant for process shutdown."""
        with self._lock:
            handle = self._handle
            self._handle = None
            self._descriptor = None
        if handle is not None:
            handle.stop()
            self._log.info("Live stream stopped")
