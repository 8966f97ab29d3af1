#!/usr/bin/env python3
"""
Capture engines: one running GStreamer job per EngineHandle.

Two launch strategies satisfy the same contract:
- ProcessLauncher spawns the first ``gst-launch`` candidate that starts.
- PipelineLauncher builds the pipeline in-process through the Gst bindings.

A launcher returns only once the job is usable: the bound port is known for
live pipelines, the job is running for recordings. Backend messages are read
by a daemon observer thread which reports to the handle through a queue;
owners see failures on the next status() call. A handle that is dropped
without stop() still tears down its process or pipeline.
"""

from __future__ import annotations

import logging
import queue
import socket
import subprocess
import threading
import time
import weakref
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

from sentry.pipeline_spec import DEFAULT_LIVE_HOST, ROLE_LIVE, SINK_ELEMENT_NAME, PipelineSpec

DEFAULT_EXECUTABLES = ("gst-launch", "gst-launch-1.0")
DEFAULT_PORT_TIMEOUT = 5.0
DEFAULT_STARTUP_GRACE = 0.5
DEFAULT_STOP_TIMEOUT = 2.0
STDERR_TAIL_LINES = 20

EVENT_RUNNING = "running"
EVENT_ERROR = "error"
EVENT_EOS = "eos"


class CaptureError(Exception):
    """Raised when a capture job cannot be started or stopped."""


class NoBackendAvailable(CaptureError):
    def __init__(self, message: str, *, attempts: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.attempts = list(attempts)


class BackendStartupFailed(CaptureError):
    pass


class PortNotAllocated(CaptureError):
    pass


class EngineState(str, Enum):
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class EngineEvent:
    kind: str
    detail: str = ""
    timestamp: float = field(default_factory=time.time)


class EngineHandle:
    """One running capture job. Subclasses implement _terminate()."""

    backend = "engine"

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        port: Optional[int] = None,
        events: "queue.Queue[EngineEvent] | None" = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.spec = spec
        self.role = spec.role
        self.port = port
        self._events: "queue.Queue[EngineEvent]" = events if events is not None else queue.Queue()
        self._log = logger or logging.getLogger("capture_engine")
        self._lock = threading.Lock()
        self._state = EngineState.RUNNING
        self._stopped = False

    def poll_events(self) -> list[EngineEvent]:
        """Drain observer events without blocking and fold them into the state."""
        drained: list[EngineEvent] = []
        while True:
            try:
                drained.append(self._events.get_nowait())
            except queue.Empty:
                break
        if drained:
            with self._lock:
                for event in drained:
                    if self._state is not EngineState.RUNNING:
                        continue
                    if event.kind == EVENT_ERROR:
                        self._state = EngineState.FAILED
                    elif event.kind == EVENT_EOS:
                        self._state = EngineState.FINISHED
        return drained

    def status(self) -> EngineState:
        self.poll_events()
        with self._lock:
            return self._state

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    def stop(self) -> None:
        """Terminate the job. Stopping an already stopped handle does nothing."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._state = EngineState.STOPPED
        self._terminate()

    def _terminate(self) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} role={self.role} port={self.port} state={self._state.value}>"


# --------------------------------------------------------------------------
# External process strategy
# --------------------------------------------------------------------------

def reserve_port(host: str) -> int:
    """Ask the OS for a free TCP port on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def wait_for_listener(
    host: str,
    port: int,
    timeout: float,
    proc: Optional[subprocess.Popen] = None,
) -> bool:
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        try:
            with socket.create_connection((host, port), timeout=0.25):
                return True
        except OSError:
            if proc is not None and proc.poll() is not None:
                return False
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)


def _terminate_process(proc: subprocess.Popen, timeout: float, log: logging.Logger) -> Optional[int]:
    rc = proc.poll()
    if rc is not None:
        log.info("capture process %s already exited rc=%s", proc.pid, rc)
        return rc
    try:
        proc.terminate()
    except ProcessLookupError:
        return proc.poll()
    except OSError as exc:
        raise CaptureError(f"could not signal capture process {proc.pid}: {exc}") from exc
    try:
        rc = proc.wait(timeout=timeout)
        log.info("capture process %s terminated with rc=%s", proc.pid, rc)
        return rc
    except subprocess.TimeoutExpired:
        log.warning("capture process %s did not exit after SIGTERM; sending SIGKILL", proc.pid)
    try:
        proc.kill()
    except OSError as exc:
        log.exception("capture process %s kill() raised; process may remain: %r", proc.pid, exc)
        raise CaptureError(f"could not kill capture process {proc.pid}: {exc}") from exc
    try:
        rc = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        log.error("capture process %s still not reaped after SIGKILL", proc.pid)
        raise CaptureError(f"capture process {proc.pid} did not exit") from exc
    log.info("capture process %s killed; rc=%s", proc.pid, rc)
    return rc


def _reap_orphan(proc: subprocess.Popen, timeout: float, log: logging.Logger) -> None:
    # Runs from weakref.finalize; must not raise.
    try:
        _terminate_process(proc, timeout, log)
    except CaptureError as exc:
        log.error("failed to clean up discarded capture process: %s", exc)


def _read_stderr_tail(proc: subprocess.Popen) -> str:
    stream = proc.stderr
    if stream is None:
        return ""
    try:
        data = stream.read() or b""
    except (OSError, ValueError):
        return ""
    finally:
        stream.close()
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    lines = [line for line in data.splitlines() if line.strip()]
    return " | ".join(lines[-3:])


def _watch_process(
    proc: subprocess.Popen,
    events: "queue.Queue[EngineEvent]",
    log: logging.Logger,
    label: str,
) -> None:
    tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    stream = proc.stderr
    if stream is not None:
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip() if isinstance(raw, bytes) else str(raw).rstrip()
                if line:
                    tail.append(line)
                    log.debug("[%s] %s", label, line)
        except (OSError, ValueError):
            pass
        finally:
            stream.close()
    rc = proc.wait()
    if rc == 0:
        log.info("[%s] capture process reached end of stream", label)
        events.put(EngineEvent(EVENT_EOS, "exited rc=0"))
    else:
        detail = f"exited rc={rc}"
        if tail:
            detail = f"{detail}: {tail[-1]}"
        log.warning("[%s] capture process %s", label, detail)
        events.put(EngineEvent(EVENT_ERROR, detail))


class ProcessEngineHandle(EngineHandle):
    backend = "process"

    def __init__(
        self,
        spec: PipelineSpec,
        proc: subprocess.Popen,
        *,
        executable: str,
        port: Optional[int] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(spec, port=port, logger=logger)
        self.executable = executable
        self._proc = proc
        self._stop_timeout = stop_timeout
        # The observer and finalizer hold the process, never the handle.
        self._finalizer = weakref.finalize(self, _reap_orphan, proc, stop_timeout, self._log)
        label = f"{spec.role}:{executable}"
        self._observer = threading.Thread(
            target=_watch_process,
            args=(proc, self._events, self._log, label),
            name=f"capture-{spec.role}",
            daemon=True,
        )
        self._observer.start()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def _terminate(self) -> None:
        _terminate_process(self._proc, self._stop_timeout, self._log)
        self._finalizer.detach()
        self._observer.join(timeout=self._stop_timeout)


PopenFactory = Callable[..., subprocess.Popen]
ListenerProbe = Callable[[str, int, float, Optional[subprocess.Popen]], bool]


class ProcessLauncher:
    """Launch ``gst-launch`` style executables, first candidate that spawns wins."""

    def __init__(
        self,
        executables: Sequence[str] = DEFAULT_EXECUTABLES,
        *,
        popen: PopenFactory = subprocess.Popen,
        startup_grace: float = DEFAULT_STARTUP_GRACE,
        port_timeout: float = DEFAULT_PORT_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        port_reserver: Callable[[str], int] = reserve_port,
        listener_probe: ListenerProbe = wait_for_listener,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executables = [str(name) for name in executables if str(name).strip()]
        self.startup_grace = max(0.0, float(startup_grace))
        self.port_timeout = max(0.0, float(port_timeout))
        self.stop_timeout = max(0.0, float(stop_timeout))
        self._popen = popen
        self._reserve_port = port_reserver
        self._probe = listener_probe
        self._log = logger or logging.getLogger("capture_engine")

    def launch(self, spec: PipelineSpec) -> ProcessEngineHandle:
        port: Optional[int] = None
        if spec.role == ROLE_LIVE:
            # A separate process cannot report the port it bound, so pick one here.
            host = spec.host or DEFAULT_LIVE_HOST
            try:
                port = spec.port or self._reserve_port(host)
            except OSError as exc:
                raise BackendStartupFailed(f"could not reserve a port on {host}: {exc}") from exc
            spec = spec.with_port(port)

        attempts: list[str] = []
        for executable in self.executables:
            cmd = [executable, *spec.to_argv()]
            try:
                proc = self._popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                attempts.append(f"{executable}: {exc}")
                self._log.warning("Could not launch %s for %s capture: %r", executable, spec.role, exc)
                continue
            self._log.info("Launched %s (pid %s) for %s capture", executable, proc.pid, spec.role)
            return self._confirm(spec, proc, executable, port)

        tried = ", ".join(self.executables) or "none configured"
        raise NoBackendAvailable(
            f"no capture executable could be launched (tried: {tried})",
            attempts=attempts,
        )

    def _confirm(
        self,
        spec: PipelineSpec,
        proc: subprocess.Popen,
        executable: str,
        port: Optional[int],
    ) -> ProcessEngineHandle:
        try:
            rc = proc.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            rc = None
        if rc is not None:
            detail = _read_stderr_tail(proc)
            message = f"{executable} exited during startup (rc={rc})"
            if detail:
                message = f"{message}: {detail}"
            raise BackendStartupFailed(message)

        handle = ProcessEngineHandle(
            spec,
            proc,
            executable=executable,
            port=port,
            stop_timeout=self.stop_timeout,
            logger=self._log,
        )
        if port is None:
            return handle

        host = spec.host or DEFAULT_LIVE_HOST
        if self._probe(host, port, self.port_timeout, proc):
            return handle
        try:
            handle.stop()
        except CaptureError as exc:
            self._log.warning("Cleanup after port timeout failed: %s", exc)
        raise PortNotAllocated(
            f"{executable} was not listening on {host}:{port} after {self.port_timeout:.1f}s"
        )


# --------------------------------------------------------------------------
# In-process pipeline strategy
# --------------------------------------------------------------------------

_GST_LOCK = threading.Lock()
_GST: Any = None


def load_gst() -> Any:
    """Import and initialise GStreamer once per process."""
    global _GST
    with _GST_LOCK:
        if _GST is None:
            import gi

            gi.require_version("Gst", "1.0")
            from gi.repository import Gst

            Gst.init(None)
            _GST = Gst
        return _GST


def _watch_bus(
    gst: Any,
    pipeline: Any,
    bus: Any,
    sink: Any,
    want_port: bool,
    ready: "queue.Queue[tuple[str, Any]]",
    events: "queue.Queue[EngineEvent]",
    halt: threading.Event,
    log: logging.Logger,
    label: str,
) -> None:
    mask = gst.MessageType.ERROR | gst.MessageType.EOS | gst.MessageType.STATE_CHANGED
    announced = False
    while not halt.is_set():
        msg = bus.timed_pop_filtered(100 * gst.MSECOND, mask)
        if msg is None:
            continue
        if msg.type == gst.MessageType.STATE_CHANGED:
            if msg.src is not pipeline:
                continue
            _old, new, _pending = msg.parse_state_changed()
            log.debug("[%s] pipeline state -> %s", label, new)
            if new == gst.State.PLAYING and not announced:
                announced = True
                port = None
                if want_port and sink is not None:
                    port = sink.get_property("current-port")
                ready.put((EVENT_RUNNING, port))
                events.put(EngineEvent(EVENT_RUNNING, f"port={port}" if port else ""))
        elif msg.type == gst.MessageType.ERROR:
            err, debug = msg.parse_error()
            log.error("[%s] pipeline error: %s (%s)", label, err, debug)
            if not announced:
                ready.put((EVENT_ERROR, str(err)))
            events.put(EngineEvent(EVENT_ERROR, str(err)))
            return
        elif msg.type == gst.MessageType.EOS:
            log.info("[%s] pipeline reached end of stream", label)
            if not announced:
                ready.put((EVENT_ERROR, "end of stream before playing"))
            events.put(EngineEvent(EVENT_EOS))
            return


def _release_pipeline(gst: Any, pipeline: Any, halt: threading.Event, log: logging.Logger) -> None:
    # Runs from weakref.finalize; must not raise.
    halt.set()
    try:
        pipeline.set_state(gst.State.NULL)
    except Exception as exc:  # noqa: BLE001 - diagnostics only
        log.error("failed to release discarded pipeline: %r", exc)


class PipelineEngineHandle(EngineHandle):
    backend = "pipeline"

    def __init__(
        self,
        spec: PipelineSpec,
        gst: Any,
        pipeline: Any,
        *,
        port: Optional[int],
        events: "queue.Queue[EngineEvent]",
        observer: threading.Thread,
        halt: threading.Event,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(spec, port=port, events=events, logger=logger)
        self._gst = gst
        self._pipeline = pipeline
        self._observer = observer
        self._halt = halt
        self._stop_timeout = stop_timeout
        self._finalizer = weakref.finalize(self, _release_pipeline, gst, pipeline, halt, self._log)

    def _terminate(self) -> None:
        self._halt.set()
        ret = self._pipeline.set_state(self._gst.State.NULL)
        if ret == self._gst.StateChangeReturn.FAILURE:
            raise CaptureError("pipeline refused to change to NULL state")
        self._finalizer.detach()
        self._observer.join(timeout=self._stop_timeout)
        self._log.info("%s pipeline stopped", self.role)


class PipelineLauncher:
    """Run the pipeline inside this process through the GStreamer bindings."""

    def __init__(
        self,
        *,
        gst_loader: Callable[[], Any] = load_gst,
        port_timeout: float = DEFAULT_PORT_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._gst_loader = gst_loader
        self.port_timeout = max(0.0, float(port_timeout))
        self.stop_timeout = max(0.0, float(stop_timeout))
        self._log = logger or logging.getLogger("capture_engine")

    def launch(self, spec: PipelineSpec) -> PipelineEngineHandle:
        try:
            gst = self._gst_loader()
        except (ImportError, ValueError) as exc:
            raise NoBackendAvailable(f"GStreamer bindings unavailable: {exc}", attempts=[repr(exc)]) from exc

        try:
            pipeline = gst.parse_launch(spec.description)
        except Exception as exc:  # noqa: BLE001 - GLib.Error surfaces here
            raise BackendStartupFailed(f"pipeline construction failed: {exc}") from exc
        if pipeline is None:
            raise BackendStartupFailed("pipeline construction failed")

        bus = pipeline.get_bus()
        if bus is None:
            raise BackendStartupFailed("bus extraction failed")

        want_port = spec.role == ROLE_LIVE
        sink = pipeline.get_by_name(SINK_ELEMENT_NAME)
        if want_port and sink is None:
            raise BackendStartupFailed(f"pipeline has no element named {SINK_ELEMENT_NAME!r}")

        ready: "queue.Queue[tuple[str, Any]]" = queue.Queue()
        events: "queue.Queue[EngineEvent]" = queue.Queue()
        halt = threading.Event()
        observer = threading.Thread(
            target=_watch_bus,
            args=(gst, pipeline, bus, sink, want_port, ready, events, halt, self._log, spec.role),
            name=f"capture-{spec.role}",
            daemon=True,
        )
        observer.start()

        ret = pipeline.set_state(gst.State.PLAYING)
        if ret == gst.StateChangeReturn.FAILURE:
            self._abort(gst, pipeline, halt)
            raise BackendStartupFailed("pipeline refused to change to PLAYING state")

        port: Optional[int] = None
        if want_port:
            try:
                outcome, detail = ready.get(timeout=self.port_timeout)
            except queue.Empty:
                self._abort(gst, pipeline, halt)
                raise PortNotAllocated(
                    f"pipeline did not report a bound port within {self.port_timeout:.1f}s"
                ) from None
            if outcome == EVENT_ERROR:
                self._abort(gst, pipeline, halt)
                raise BackendStartupFailed(f"pipeline failed during startup: {detail}")
            try:
                port = int(detail or 0)
            except (TypeError, ValueError):
                port = 0
            if port <= 0:
                self._abort(gst, pipeline, halt)
                raise PortNotAllocated("tcp sink reported no bound port")

        self._log.info("Started in-process %s pipeline%s", spec.role, f" on port {port}" if port else "")
        return PipelineEngineHandle(
            spec,
            gst,
            pipeline,
            port=port,
            events=events,
            observer=observer,
            halt=halt,
            stop_timeout=self.stop_timeout,
            logger=self._log,
        )

    def _abort(self, gst: Any, pipeline: Any, halt: threading.Event) -> None:
        halt.set()
        try:
            pipeline.set_state(gst.State.NULL)
        except Exception as exc:  # noqa: BLE001 - diagnostics only
            self._log.warning("Failed to reset pipeline after startup error: %r", exc)


# --------------------------------------------------------------------------
# Strategy selection
# --------------------------------------------------------------------------

class LauncherChain:
    """Try launchers in order; the first one with a usable backend wins."""

    def __init__(self, launchers: Iterable[Any], *, logger: logging.Logger | None = None) -> None:
        self.launchers = list(launchers)
        self._log = logger or logging.getLogger("capture_engine")

    def launch(self, spec: PipelineSpec) -> EngineHandle:
        attempts: list[str] = []
        for launcher in self.launchers:
            try:
                return launcher.launch(spec)
            except NoBackendAvailable as exc:
                self._log.warning("%s unavailable: %s", type(launcher).__name__, exc)
                attempts.extend(exc.attempts or [str(exc)])
        raise NoBackendAvailable("no capture backend available", attempts=attempts)


def build_launcher(capture_cfg: dict | None = None, *, logger: logging.Logger | None = None) -> Any:
    capture_cfg = capture_cfg or {}
    backend = str(capture_cfg.get("backend", "process")).strip().lower()
    port_timeout = float(capture_cfg.get("port_timeout_sec", DEFAULT_PORT_TIMEOUT))
    stop_timeout = float(capture_cfg.get("stop_timeout_sec", DEFAULT_STOP_TIMEOUT))

    def _process() -> ProcessLauncher:
        return ProcessLauncher(
            executables=capture_cfg.get("executables") or DEFAULT_EXECUTABLES,
            startup_grace=float(capture_cfg.get("startup_grace_sec", DEFAULT_STARTUP_GRACE)),
            port_timeout=port_timeout,
            stop_timeout=stop_timeout,
            logger=logger,
        )

    def _pipeline() -> PipelineLauncher:
        return PipelineLauncher(port_timeout=port_timeout, stop_timeout=stop_timeout, logger=logger)

    if backend == "process":
        return _process()
    if backend == "pipeline":
        return _pipeline()
    if backend == "auto":
        return LauncherChain([_pipeline(), _process()], logger=logger)
    raise ValueError(f"unknown capture backend: {backend!r}")
