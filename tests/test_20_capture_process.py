from __future__ import annotations

import gc
import io
import subprocess
import sys
import threading
import time

import pytest

from sentry.capture_engine import (
    BackendStartupFailed,
    EngineState,
    NoBackendAvailable,
    PortNotAllocated,
    ProcessLauncher,
    reserve_port,
    wait_for_listener,
)
from sentry.pipeline_spec import build_live_spec, build_record_spec


class FakeProcess:
    _next_pid = 4000

    def __init__(self, args, *, exit_code=None, stderr=b"", ignore_terminate=False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = args
        self.returncode = None
        self.stderr = io.BytesIO(stderr)
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = threading.Event()
        if exit_code is not None:
            self.finish(exit_code)

    def finish(self, code):
        self.returncode = code
        self._exited.set()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.finish(-15)

    def kill(self):
        self.kill_calls += 1
        self.finish(-9)


class FakePopen:
    """Popen stand-in: names in ``missing`` raise FileNotFoundError."""

    def __init__(self, missing=(), **process_kwargs):
        self.missing = set(missing)
        self.process_kwargs = process_kwargs
        self.calls = []
        self.processes = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if cmd[0] in self.missing:
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        proc = FakeProcess(cmd, **self.process_kwargs)
        self.processes.append(proc)
        return proc


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _launcher(popen, executables=("gst-launch", "gst-launch-1.0"), **kwargs):
    kwargs.setdefault("startup_grace", 0.01)
    kwargs.setdefault("stop_timeout", 0.05)
    return ProcessLauncher(executables, popen=popen, **kwargs)


def test_first_spawnable_candidate_wins(tmp_path):
    popen = FakePopen(missing={"gst-launch", "gst-launch-0.10"})
    launcher = _launcher(popen, executables=("gst-launch", "gst-launch-0.10", "gst-launch-1.0"))

    handle = launcher.launch(build_record_spec(tmp_path / "rec.ogv"))

    assert [call[0][0] for call in popen.calls] == ["gst-launch", "gst-launch-0.10", "gst-launch-1.0"]
    assert len(popen.processes) == 1
    assert handle.executable == "gst-launch-1.0"
    assert handle.port is None
    assert handle.status() is EngineState.RUNNING
    cmd, kwargs = popen.calls[-1]
    assert cmd[1:] == build_record_spec(tmp_path / "rec.ogv").to_argv()
    assert kwargs["stderr"] == subprocess.PIPE
    assert kwargs["start_new_session"] is True
    handle.stop()


def test_all_candidates_missing_raises_no_backend(tmp_path):
    popen = FakePopen(missing={"gst-launch", "gst-launch-1.0"})
    launcher = _launcher(popen)

    with pytest.raises(NoBackendAvailable) as excinfo:
        launcher.launch(build_record_spec(tmp_path / "rec.ogv"))

    assert len(excinfo.value.attempts) == 2
    assert popen.processes == []


def test_empty_candidate_list_raises_no_backend(tmp_path):
    launcher = _launcher(FakePopen(), executables=())

    with pytest.raises(NoBackendAvailable):
        launcher.launch(build_record_spec(tmp_path / "rec.ogv"))


def test_early_exit_reports_startup_failure(tmp_path):
    popen = FakePopen(exit_code=1, stderr=b"WARNING: erroneous pipeline: no element \"wrappercamerabinsrc\"\n")
    launcher = _launcher(popen)

    with pytest.raises(BackendStartupFailed) as excinfo:
        launcher.launch(build_record_spec(tmp_path / "rec.ogv"))

    message = str(excinfo.value)
    assert "rc=1" in message
    assert "wrappercamerabinsrc" in message
    assert popen.processes[0].stderr.closed


def test_observer_closes_stderr_after_exit(tmp_path):
    popen = FakePopen(stderr=b"ERROR: from element /GstPipeline:pipeline0/GstFileSink:sink\n")
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))
    proc = popen.processes[0]

    proc.finish(1)

    assert _wait_for(lambda: handle.status() is EngineState.FAILED)
    assert _wait_for(lambda: proc.stderr.closed)
    handle.stop()


def test_live_launch_binds_reserved_port():
    popen = FakePopen()
    probed = []

    def probe(host, port, timeout, proc):
        probed.append((host, port))
        return True

    launcher = _launcher(popen, port_reserver=lambda host: 45123, listener_probe=probe)

    handle = launcher.launch(build_live_spec())

    assert handle.port == 45123
    assert probed == [("127.0.0.1", 45123)]
    assert popen.calls[0][0][-4:] == ["tcpserversink", "name=sink", "host=127.0.0.1", "port=45123"]
    handle.stop()


def test_live_launch_without_listener_raises_port_not_allocated():
    popen = FakePopen()
    launcher = _launcher(
        popen,
        port_reserver=lambda host: 45124,
        listener_probe=lambda host, port, timeout, proc: False,
    )

    with pytest.raises(PortNotAllocated):
        launcher.launch(build_live_spec())

    assert popen.processes[0].terminate_calls == 1


def test_stop_is_idempotent(tmp_path):
    popen = FakePopen()
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))
    proc = popen.processes[0]

    handle.stop()
    handle.stop()

    assert proc.terminate_calls == 1
    assert handle.stopped is True
    assert handle.status() is EngineState.STOPPED


def test_stop_escalates_to_kill(tmp_path):
    popen = FakePopen(ignore_terminate=True)
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))
    proc = popen.processes[0]

    handle.stop()

    assert proc.terminate_calls == 1
    assert proc.kill_calls == 1
    assert proc.returncode == -9


def test_observer_reports_process_exit(tmp_path):
    popen = FakePopen()
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))

    popen.processes[0].finish(1)

    assert _wait_for(lambda: handle.status() is EngineState.FAILED)
    assert handle.poll_events() == []
    handle.stop()
    assert popen.processes[0].terminate_calls == 0


def test_observer_reports_end_of_stream(tmp_path):
    popen = FakePopen()
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))

    popen.processes[0].finish(0)

    assert _wait_for(lambda: handle.status() is EngineState.FINISHED)


def test_discarded_handle_terminates_process(tmp_path):
    popen = FakePopen()
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))
    proc = popen.processes[0]

    del handle
    gc.collect()

    assert proc.terminate_calls == 1
    assert proc.returncode == -15


def test_stopped_handle_is_not_terminated_again_on_discard(tmp_path):
    popen = FakePopen()
    handle = _launcher(popen).launch(build_record_spec(tmp_path / "rec.ogv"))
    proc = popen.processes[0]

    handle.stop()
    del handle
    gc.collect()

    assert proc.terminate_calls == 1


def _sleeper_popen(started):
    def factory(cmd, **kwargs):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"], **kwargs)
        started.append(proc)
        return proc

    return factory


def test_real_process_is_stopped(tmp_path):
    started: list[subprocess.Popen] = []
    launcher = ProcessLauncher(["sleeper"], popen=_sleeper_popen(started), startup_grace=0.2, stop_timeout=2.0)

    handle = launcher.launch(build_record_spec(tmp_path / "rec.ogv"))
    assert started[0].poll() is None

    handle.stop()

    assert started[0].poll() is not None


def test_real_discarded_process_is_reaped(tmp_path):
    started: list[subprocess.Popen] = []
    launcher = ProcessLauncher(["sleeper"], popen=_sleeper_popen(started), startup_grace=0.2, stop_timeout=2.0)

    handle = launcher.launch(build_record_spec(tmp_path / "rec.ogv"))
    del handle
    gc.collect()

    assert started[0].poll() is not None


def test_real_startup_failure_falls_through_missing_executable(tmp_path):
    launcher = ProcessLauncher(
        [str(tmp_path / "no-such-gst-launch"), sys.executable],
        startup_grace=10.0,
    )

    # The interpreter spawns, then exits because the pipeline is not a script.
    with pytest.raises(BackendStartupFailed) as excinfo:
        launcher.launch(build_record_spec(tmp_path / "rec.ogv"))

    assert "exited during startup" in str(excinfo.value)


def test_wait_for_listener_sees_open_socket():
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        assert wait_for_listener("127.0.0.1", port, timeout=1.0) is True

    free_port = reserve_port("127.0.0.1")
    assert wait_for_listener("127.0.0.1", free_port, timeout=0.1) is False
