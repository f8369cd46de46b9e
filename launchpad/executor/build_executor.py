"""
Build Executor
==============
Turns a checked-out workspace into something runnable.

Two interchangeable strategies implement ``BuildExecutor.build``:

    ContainerBuildExecutor
        - Synthesizes a Dockerfile when the workspace has none.
        - Builds an image with the Docker API, tagged deterministically
          from the run id.
        - Streams every build output line to the log sink as it arrives.

    NativeBuildExecutor
        - Detects the package manager from lockfiles.
        - Runs install, then the build script when one exists.
        - The build step always runs with NODE_ENV=production, whatever
          the caller put in the environment.

BOUNDARY RULES:
    - Executor never picks ports and never starts the workload.
    - Executor reports failure only through BuildFailed / ConfigInvalid.
"""
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Dict, Optional, Tuple

import docker
from docker.errors import APIError, BuildError, DockerException

from launchpad.core.config import BASE_IMAGE, INTERNAL_PORT
from launchpad.core.constants import BUILD_ENV_DESIGNATOR, LOG_TAIL_LINES
from launchpad.core.errors import BuildFailed
from launchpad.executor.command_resolver import resolve_commands
from launchpad.executor.dockerfile import ensure_build_descriptor
from launchpad.executor.project_detector import detect_node_app
from launchpad.models.run import BuildArtifact, Workspace
from launchpad.utils.naming import image_name

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


def build_child_env(
    caller_env: Dict[str, str],
    forced: Optional[Dict[str, str]] = None,
    drop: Tuple[str, ...] = (),
) -> Dict[str, str]:
    """
    Environment for a child process.

    Host environment, overlaid with the caller's variables, minus ``drop``,
    overlaid with ``forced``. Caller input can never override ``forced``.
    """
    env = {**os.environ, **caller_env}
    for key in drop:
        env.pop(key, None)
    if forced:
        env.update(forced)
    return env


def stream_command(command: str, cwd: str, env: Dict[str, str], sink: LogSink,
                   tail_size: int = LOG_TAIL_LINES) -> Tuple[int, str]:
    """
    Run ``command`` in a shell, forwarding combined stdout/stderr line by line.

    Returns
    -------
    (exit_code, tail)
        Process exit code and the last ``tail_size`` output lines.
    """
    tail: deque = deque(maxlen=tail_size)
    sink(f"$ {command}")
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        sink(f"ERROR: could not start command: {e}")
        return 127, str(e)

    assert proc.stdout is not None
    for raw in proc.stdout:
        line = raw.rstrip("\n")
        tail.append(line)
        sink(line)
    exit_code = proc.wait()
    return exit_code, "\n".join(tail)


class BuildExecutor(ABC):
    """Build capability shared by both runner modes."""

    kind: str = ""

    @abstractmethod
    def build(self, run_id: str, workspace: Workspace, env: Dict[str, str], log: LogSink) -> BuildArtifact:
        """
        Produce a runnable artifact for ``workspace``.

        Raises
        ------
        ConfigInvalid
            No build descriptor and none can be synthesized.
        BuildFailed
            The build command exited non-zero.
        """

    def discard(self, artifact: Optional[BuildArtifact]) -> None:
        """Best-effort removal of a build artifact."""


# ---------------------------------------------------------------------------
# Containerized strategy
# ---------------------------------------------------------------------------
class ContainerBuildExecutor(BuildExecutor):

    kind = "image"

    def __init__(self, client=None, internal_port: int = INTERNAL_PORT, base_image: str = BASE_IMAGE) -> None:
        self._client = client
        self.internal_port = internal_port
        self.base_image = base_image

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def build(self, run_id: str, workspace: Workspace, env: Dict[str, str], log: LogSink) -> BuildArtifact:
        # Caller env is injected at container start, not baked into the image
        synthesized = ensure_build_descriptor(workspace.path, self.internal_port, self.base_image)
        if synthesized is not None:
            log("==> No Dockerfile found, using synthesized build descriptor")

        tag = image_name(run_id)
        log(f"==> Building image {tag}")
        logger.info("Building image %s from %s", tag, workspace.path)

        tail: deque = deque(maxlen=LOG_TAIL_LINES)

        def emit(text: str) -> None:
            for line in text.splitlines():
                if line.strip():
                    tail.append(line)
                    log(line)

        try:
            for chunk in self.client.api.build(
                path=workspace.path,
                tag=tag,
                rm=True,
                forcerm=True,
                decode=True,
            ):
                if "stream" in chunk:
                    emit(chunk["stream"])
                elif "status" in chunk:
                    emit(chunk["status"] + (f" {chunk['progress']}" if chunk.get("progress") else ""))
                elif "error" in chunk:
                    emit(chunk["error"])
                    detail = chunk.get("errorDetail") or {}
                    exit_code = detail.get("code") or 1
                    logger.error("Image build for %s failed: %s", run_id, chunk["error"].strip())
                    raise BuildFailed(exit_code, "\n".join(tail))
        except BuildFailed:
            raise
        except BuildError as e:
            emit(str(e))
            raise BuildFailed(1, "\n".join(tail), message=f"image build failed: {e}")
        except (APIError, DockerException) as e:
            emit(f"ERROR: Docker API error: {e}")
            logger.error("Docker API error while building %s: %s", run_id, e)
            raise BuildFailed(-1, "\n".join(tail), message=f"Docker API error: {e}")

        log(f"==> Built image {tag}")
        return BuildArtifact(kind=self.kind, reference=tag, log_excerpt="\n".join(tail))

    def discard(self, artifact: Optional[BuildArtifact]) -> None:
        if artifact is None or artifact.kind != self.kind:
            return
        try:
            self.client.images.remove(artifact.reference, force=True)
            logger.info("Removed image %s", artifact.reference)
        except DockerException as e:
            logger.debug("Image %s not removed: %s", artifact.reference, e)


# ---------------------------------------------------------------------------
# Native-process strategy
# ---------------------------------------------------------------------------
class NativeBuildExecutor(BuildExecutor):

    kind = "process"

    def build(self, run_id: str, workspace: Workspace, env: Dict[str, str], log: LogSink) -> BuildArtifact:
        info = detect_node_app(workspace.path)
        commands = resolve_commands(info)
        tail = ""

        log(f"==> Installing dependencies with {commands.package_manager}")
        # A caller-supplied NODE_ENV=production would skip devDependencies needed by the build
        install_env = build_child_env(env, drop=(BUILD_ENV_DESIGNATOR,))
        exit_code, tail = stream_command(commands.install_command, workspace.path, install_env, log)
        if exit_code != 0:
            logger.error("Install failed for %s (exit %d)", run_id, exit_code)
            raise BuildFailed(exit_code, tail)

        if commands.build_command:
            log("==> Building application")
            build_env = build_child_env(env, forced={BUILD_ENV_DESIGNATOR: "production"})
            exit_code, tail = stream_command(commands.build_command, workspace.path, build_env, log)
            if exit_code != 0:
                logger.error("Build failed for %s (exit %d)", run_id, exit_code)
                raise BuildFailed(exit_code, tail)

        return BuildArtifact(
            kind=self.kind,
            reference=workspace.path,
            start_command=commands.start_command,
            log_excerpt=tail,
        )
