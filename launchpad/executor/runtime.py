"""
Runtime
Pairs a build strategy with the matching run supervisor so the
orchestrator drives one ``build + run`` capability regardless of mode.

    docker  → ContainerBuildExecutor + ContainerRunSupervisor
    native  → NativeBuildExecutor    + NativeRunSupervisor
"""
import logging
from dataclasses import dataclass

from launchpad.core.config import RUNNER_MODE
from launchpad.executor.build_executor import (
    BuildExecutor,
    ContainerBuildExecutor,
    NativeBuildExecutor,
)
from launchpad.executor.run_supervisor import (
    ContainerRunSupervisor,
    NativeRunSupervisor,
    RunSupervisor,
)

logger = logging.getLogger(__name__)

SUPPORTED_MODES = ("docker", "native")


@dataclass
class Runtime:
    mode: str
    builder: BuildExecutor
    supervisor: RunSupervisor

    @property
    def containerized(self) -> bool:
        return self.mode == "docker"


def create_runtime(mode: str = RUNNER_MODE, docker_client=None) -> Runtime:
    """
    Build the runtime for ``mode``.

    Raises
    ------
    ValueError
        Unknown mode.
    """
    mode = (mode or "").lower()
    if mode == "docker":
        runtime = Runtime(
            mode=mode,
            builder=ContainerBuildExecutor(client=docker_client),
            supervisor=ContainerRunSupervisor(client=docker_client),
        )
    elif mode == "native":
        runtime = Runtime(mode=mode, builder=NativeBuildExecutor(), supervisor=NativeRunSupervisor())
    else:
        raise ValueError(f"unknown runner mode {mode!r}; expected one of {SUPPORTED_MODES}")
    logger.info("Runner mode: %s", mode)
    return runtime
