"""
Unit Tests — Run Supervisor
===========================
Container variant against a mocked docker client; native variant with
real child processes and a patched readiness probe.
"""
import sys
import time

import pytest
from unittest.mock import MagicMock
from docker.errors import APIError, NotFound

from launchpad.core.errors import RuntimeCrash, StartupTimeout, StopFailed
from launchpad.executor.run_supervisor import (
    ContainerRunSupervisor,
    NativeRunSupervisor,
    probe_http,
)
from launchpad.models.run import BuildArtifact, RunHandle
from launchpad.utils.retry import RetryPolicy


def _image(tag="launchpad-img-r1"):
    return BuildArtifact(kind="image", reference=tag)


def _client(status="running"):
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    container = MagicMock()
    container.status = status
    container.name = "launchpad-run-r1"
    container.logs.return_value = iter([b"ready on 3000\n"])
    client.containers.run.return_value = container
    return client, container


# ---------------------------------------------------------------------------
# Container variant
# ---------------------------------------------------------------------------
class TestContainerRunSupervisor:

    def test_start_applies_isolation_and_caps(self):
        client, _ = _client()
        supervisor = ContainerRunSupervisor(client=client, internal_port=3000, memory="512m", cpus=0.5)

        handle = supervisor.start("r1", _image(), 40123, {"API_URL": "https://api"}, lambda _l: None)

        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["image"] == "launchpad-img-r1"
        assert kwargs["name"] == "launchpad-run-r1"
        assert kwargs["detach"] is True
        assert kwargs["ports"] == {"3000/tcp": 40123}
        assert kwargs["environment"] == {"API_URL": "https://api"}
        assert kwargs["mem_limit"] == "512m"
        assert kwargs["nano_cpus"] == 500_000_000
        assert kwargs["read_only"] is True
        assert kwargs["cap_drop"] == ["ALL"]
        assert kwargs["security_opt"] == ["no-new-privileges:true"]
        assert handle.target == "launchpad-run-r1"
        assert handle.host_port == 40123
        assert handle.state == "running"

    def test_stale_container_with_same_name_is_removed_first(self):
        client, _ = _client()
        stale = MagicMock()
        client.containers.get.side_effect = None
        client.containers.get.return_value = stale
        ContainerRunSupervisor(client=client).start("r1", _image(), 40000, {}, lambda _l: None)
        stale.remove.assert_called_once_with(force=True)

    def test_container_that_exits_immediately_is_a_crash(self):
        client, container = _client(status="exited")
        container.logs.return_value = b"Error: Cannot find module 'server.js'\n"
        lines = []
        with pytest.raises(RuntimeCrash) as exc_info:
            ContainerRunSupervisor(client=client).start("r1", _image(), 40000, {}, lines.append)
        assert "Cannot find module" in exc_info.value.log_tail
        assert "Error: Cannot find module 'server.js'" in lines

    def test_run_api_error_is_a_crash(self):
        client, _ = _client()
        client.containers.run.side_effect = APIError("port is already allocated")
        with pytest.raises(RuntimeCrash):
            ContainerRunSupervisor(client=client).start("r1", _image(), 40000, {}, lambda _l: None)

    def test_runtime_output_is_forwarded(self):
        client, _ = _client()
        lines = []
        ContainerRunSupervisor(client=client).start("r1", _image(), 40000, {}, lines.append)
        deadline = time.time() + 2
        while "ready on 3000" not in lines and time.time() < deadline:
            time.sleep(0.01)
        assert "ready on 3000" in lines

    def test_stop_by_id_tolerates_missing_container(self):
        client, _ = _client()
        supervisor = ContainerRunSupervisor(client=client)
        supervisor.stop("r1")
        supervisor.stop("r1")
        client.containers.get.assert_called_with("launchpad-run-r1")

    def test_stop_removes_by_handle_target(self):
        client, _ = _client()
        container = MagicMock()
        client.containers.get.side_effect = None
        client.containers.get.return_value = container
        handle = RunHandle(run_id="r1", host_port=40000, kind="container", target="launchpad-run-r1")
        ContainerRunSupervisor(client=client).stop("r1", handle)
        container.remove.assert_called_once_with(force=True)
        assert handle.state == "stopped"

    def test_stop_daemon_error_is_stop_failed(self):
        client, _ = _client()
        client.containers.get.side_effect = APIError("daemon gone")
        with pytest.raises(StopFailed):
            ContainerRunSupervisor(client=client).stop("r1")

    def test_is_alive(self):
        client, _ = _client()
        handle = RunHandle(run_id="r1", host_port=40000, kind="container", target="launchpad-run-r1")
        supervisor = ContainerRunSupervisor(client=client)
        assert supervisor.is_alive(handle) is False

        client.containers.get.side_effect = None
        client.containers.get.return_value = MagicMock(status="running")
        assert supervisor.is_alive(handle) is True

        client.containers.get.return_value = MagicMock(status="exited")
        assert supervisor.is_alive(handle) is False


# ---------------------------------------------------------------------------
# Native variant
# ---------------------------------------------------------------------------
_FAST = RetryPolicy(interval=0.05, max_attempts=5)


def _process(tmp_path, command):
    return BuildArtifact(kind="process", reference=str(tmp_path), start_command=command)


@pytest.mark.skipif(sys.platform == "win32", reason="needs process groups")
class TestNativeRunSupervisor:

    def test_start_injects_port_and_becomes_ready(self, tmp_path):
        probes = []
        supervisor = NativeRunSupervisor(readiness=_FAST, grace_seconds=2,
                                         probe=lambda port: probes.append(port) or len(probes) >= 2)
        lines = []
        handle = supervisor.start("n1", _process(tmp_path, "echo listening on $PORT; sleep 30"),
                                  40555, {}, lines.append)
        try:
            assert handle.pid is not None
            assert handle.state == "running"
            assert supervisor.is_alive(handle)
            assert probes == [40555, 40555]
            assert "Waiting for application to be ready... (1/5)" in lines
        finally:
            supervisor.stop("n1", handle)
        assert not supervisor.is_alive(handle)
        deadline = time.time() + 2
        while "[app] listening on 40555" not in lines and time.time() < deadline:
            time.sleep(0.01)
        assert "[app] listening on 40555" in lines

    def test_never_ready_is_startup_timeout_and_process_is_killed(self, tmp_path):
        supervisor = NativeRunSupervisor(readiness=_FAST, grace_seconds=2, probe=lambda port: False)
        with pytest.raises(StartupTimeout):
            supervisor.start("n2", _process(tmp_path, "sleep 30"), 40556, {}, lambda _l: None)
        assert supervisor._procs == {}

    def test_early_exit_is_runtime_crash(self, tmp_path):
        supervisor = NativeRunSupervisor(readiness=RetryPolicy(interval=0.2, max_attempts=10),
                                         probe=lambda port: False)
        with pytest.raises(RuntimeCrash):
            supervisor.start("n3", _process(tmp_path, "exit 7"), 40557, {}, lambda _l: None)

    def test_stop_escalates_to_sigkill(self, tmp_path):
        supervisor = NativeRunSupervisor(readiness=_FAST, grace_seconds=0.3, probe=lambda port: True)
        handle = supervisor.start("n4", _process(tmp_path, "trap '' TERM; sleep 30"), 40558, {}, lambda _l: None)
        supervisor.stop("n4", handle)
        assert handle.state == "stopped"
        assert not supervisor.is_alive(handle)

    def test_stop_is_idempotent(self, tmp_path):
        supervisor = NativeRunSupervisor(readiness=_FAST, grace_seconds=2, probe=lambda port: True)
        handle = supervisor.start("n5", _process(tmp_path, "sleep 30"), 40559, {}, lambda _l: None)
        supervisor.stop("n5", handle)
        supervisor.stop("n5", handle)
        supervisor.stop("never-started")


def test_probe_http_treats_connection_errors_as_not_ready():
    # Nothing listens on port 1
    assert probe_http(1, timeout=0.2) is False
