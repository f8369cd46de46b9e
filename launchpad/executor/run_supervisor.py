"""
Run Supervisor
==============
Starts, watches and stops a built workload.

    ContainerRunSupervisor
        - One container per run, named from the run id, so stop-by-id
          works without a live handle (e.g. after a restart).
        - Host port → INTERNAL_PORT, memory/CPU caps, read-only root
          filesystem, all capabilities dropped, no-new-privileges.
        - Stop = force-remove by name; "already gone" is success.

    NativeRunSupervisor
        - Spawns the start command in its own process group with PORT set.
        - Declares the run healthy only after an HTTP probe answers,
          within READINESS_MAX_ATTEMPTS x READINESS_INTERVAL.
        - Stop = SIGTERM to the group, SIGKILL after a grace period;
          "already dead" is success.

Both variants pump workload output into the run's log sink from a
daemon thread.
"""
import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import docker
import httpx
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from launchpad.core.config import (
    INTERNAL_PORT,
    READINESS_INTERVAL,
    READINESS_MAX_ATTEMPTS,
    RUN_CPUS,
    RUN_MEMORY,
    STOP_GRACE_SECONDS,
)
from launchpad.core.errors import RuntimeCrash, StartupTimeout, StopFailed
from launchpad.executor.build_executor import build_child_env
from launchpad.models.run import BuildArtifact, RunHandle
from launchpad.utils.naming import container_name
from launchpad.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


class RunSupervisor(ABC):

    kind: str = ""

    @abstractmethod
    def start(self, run_id: str, artifact: BuildArtifact, port: int,
              env: Dict[str, str], log: LogSink) -> RunHandle:
        """Start the workload on host ``port``; raise StartupTimeout / RuntimeCrash."""

    @abstractmethod
    def stop(self, run_id: str, handle: Optional[RunHandle] = None) -> None:
        """Tear the workload down. Idempotent; raises StopFailed only if teardown is unconfirmed."""

    @abstractmethod
    def is_alive(self, handle: RunHandle) -> bool:
        ...


def _pump(lines, log: LogSink, prefix: str = "") -> None:
    try:
        for raw in lines:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            for line in raw.splitlines():
                log(f"{prefix}{line}")
    except (OSError, ValueError, DockerException) as e:
        # Stream closed underneath us when the workload was removed
        logger.debug("Output pump ended: %s", e)


# ---------------------------------------------------------------------------
# Containerized variant
# ---------------------------------------------------------------------------
class ContainerRunSupervisor(RunSupervisor):

    kind = "container"

    def __init__(self, client=None, internal_port: int = INTERNAL_PORT,
                 memory: str = RUN_MEMORY, cpus: float = RUN_CPUS) -> None:
        self._client = client
        self.internal_port = internal_port
        self.memory = memory
        self.cpus = cpus

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _remove(self, name: str) -> bool:
        """Force-remove ``name``; True if something was removed."""
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            return False
        return True

    def start(self, run_id: str, artifact: BuildArtifact, port: int,
              env: Dict[str, str], log: LogSink) -> RunHandle:
        name = container_name(run_id)

        # A container left over from an earlier attempt with the same id
        try:
            if self._remove(name):
                logger.info("Removed stale container %s", name)
        except DockerException as e:
            logger.warning("Could not remove stale container %s: %s", name, e)

        log(f"==> Running container {name} on :{port}")
        logger.info(
            "Starting container | name=%s | image=%s | port=%d->%d | mem=%s | cpus=%s",
            name, artifact.reference, port, self.internal_port, self.memory, self.cpus,
        )
        try:
            container = self.client.containers.run(
                image=artifact.reference,
                name=name,
                detach=True,
                ports={f"{self.internal_port}/tcp": port},
                environment=dict(env),
                mem_limit=self.memory,
                nano_cpus=int(self.cpus * 1_000_000_000),
                read_only=True,
                tmpfs={"/tmp": "rw,size=64m"},
                cap_drop=["ALL"],
                security_opt=["no-new-privileges:true"],
                labels={"project": "launchpad", "run_id": run_id},
            )
        except ImageNotFound as e:
            raise RuntimeCrash(f"image {artifact.reference} not found: {e}")
        except (APIError, DockerException) as e:
            raise RuntimeCrash(f"container failed to start: {e}")

        handle = RunHandle(
            run_id=run_id,
            host_port=port,
            kind=self.kind,
            target=name,
            metadata={"image": artifact.reference, "container_id": getattr(container, "short_id", "")},
        )

        try:
            container.reload()
        except DockerException as e:
            logger.warning("Could not reload container %s: %s", name, e)
        if getattr(container, "status", "running") in ("exited", "dead"):
            output = ""
            try:
                output = container.logs(tail=40).decode("utf-8", errors="replace")
            except DockerException:
                pass
            for line in output.splitlines():
                log(line)
            raise RuntimeCrash(f"container {name} exited immediately", log_tail=output)

        threading.Thread(
            target=self._follow_logs, args=(container, log),
            name=f"logs-{name}", daemon=True,
        ).start()

        handle.state = "running"
        return handle

    def _follow_logs(self, container, log: LogSink) -> None:
        try:
            stream = container.logs(stream=True, follow=True)
        except DockerException as e:
            logger.debug("Log follow for %s unavailable: %s", container.name, e)
            return
        _pump(stream, log)

    def stop(self, run_id: str, handle: Optional[RunHandle] = None) -> None:
        name = handle.target if handle is not None else container_name(run_id)
        try:
            removed = self._remove(name)
        except DockerException as e:
            raise StopFailed(f"could not remove container {name}: {e}")
        if removed:
            logger.info("Container %s removed", name)
        else:
            logger.info("Container %s already gone", name)
        if handle is not None:
            handle.state = "stopped"

    def is_alive(self, handle: RunHandle) -> bool:
        try:
            container = self.client.containers.get(handle.target)
        except NotFound:
            return False
        except DockerException as e:
            # Daemon hiccup is not evidence of a crash
            logger.warning("Liveness check for %s failed: %s", handle.target, e)
            return True
        return container.status in ("running", "created", "restarting")


# ---------------------------------------------------------------------------
# Native-process variant
# ---------------------------------------------------------------------------
_READINESS_POLICY = RetryPolicy(interval=READINESS_INTERVAL, max_attempts=READINESS_MAX_ATTEMPTS)


def probe_http(port: int, host: str = "127.0.0.1", timeout: float = 2.0) -> bool:
    """True when anything answers HTTP on ``port`` with a non-5xx status."""
    try:
        response = httpx.get(f"http://{host}:{port}/", timeout=timeout)
    except httpx.HTTPError:
        return False
    return response.status_code < 500


class NativeRunSupervisor(RunSupervisor):

    kind = "process"

    def __init__(self, readiness: RetryPolicy = _READINESS_POLICY,
                 grace_seconds: float = STOP_GRACE_SECONDS,
                 probe: Callable[[int], bool] = probe_http) -> None:
        self.readiness = readiness
        self.grace_seconds = grace_seconds
        self.probe = probe
        self._procs: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def start(self, run_id: str, artifact: BuildArtifact, port: int,
              env: Dict[str, str], log: LogSink) -> RunHandle:
        command = artifact.start_command or "npm start"
        child_env = build_child_env(env, forced={"PORT": str(port)})

        log(f"==> Starting application on port {port}: {command}")
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=artifact.reference,
                env=child_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise RuntimeCrash(f"could not spawn {command!r}: {e}")

        with self._lock:
            self._procs[run_id] = proc
        handle = RunHandle(run_id=run_id, host_port=port, kind=self.kind,
                           target=str(proc.pid), pid=proc.pid)

        threading.Thread(
            target=_pump, args=(proc.stdout, log, "[app] "),
            name=f"logs-{run_id}", daemon=True,
        ).start()

        total = self.readiness.max_attempts or 0
        for attempt in self.readiness.attempts():
            if proc.poll() is not None:
                code = proc.returncode
                self._forget(run_id)
                raise RuntimeCrash(f"application exited with code {code} before becoming ready")
            if self.probe(port):
                log(f"==> Application is running on port {port}")
                handle.state = "running"
                return handle
            log(f"Waiting for application to be ready... ({attempt}/{total})")

        log("ERROR: application failed to start within timeout")
        try:
            self.stop(run_id, handle)
        except StopFailed as e:
            logger.warning("Cleanup after startup timeout for %s: %s", run_id, e)
        raise StartupTimeout(f"application did not answer on port {port} after {total} attempts")

    def _forget(self, run_id: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._procs.pop(run_id, None)

    def stop(self, run_id: str, handle: Optional[RunHandle] = None) -> None:
        proc = self._forget(run_id)
        pid = proc.pid if proc is not None else (handle.pid if handle is not None else None)
        if pid is None:
            logger.info("No process known for run %s", run_id)
            return

        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info("Process group %d already gone", pid)
            if proc is not None:
                proc.wait()
            return
        except PermissionError as e:
            raise StopFailed(f"not allowed to signal process group {pid}: {e}")

        if proc is None:
            if handle is not None:
                handle.state = "stopped"
            return

        try:
            proc.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process group %d ignored SIGTERM, sending SIGKILL", pid)
            try:
                os.killpg(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=self.grace_seconds)
            except subprocess.TimeoutExpired:
                raise StopFailed(f"process {pid} survived SIGKILL")
        logger.info("Process group %d stopped", pid)
        if handle is not None:
            handle.state = "stopped"

    def is_alive(self, handle: RunHandle) -> bool:
        with self._lock:
            proc = self._procs.get(handle.run_id)
        return proc is not None and proc.poll() is None
