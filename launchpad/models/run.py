"""
Run Models
==========
Value types passed between the pipeline components.

    Workspace      — a local tree of (owner, repo, branch) to build from
    BuildArtifact  — what the Build Executor produced (image tag or app tree)
    RunHandle      — a started workload plus the host port it owns
    RunStatus      — lifecycle state of a run
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    BUILDING = "BUILDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.STOPPED, RunStatus.FAILED)


@dataclass(frozen=True)
class Workspace:
    owner: str
    repo: str
    branch: str
    path: str
    # Shared checkout this tree was copied from; None when path is the checkout itself
    cache_path: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.owner, self.repo, self.branch)


@dataclass
class BuildArtifact:
    """
    Output of a build.

    Fields
    ------
    kind : str
        "image" for a container image, "process" for an installed app tree.
    reference : str
        Image tag, or the workspace path holding the installed app.
    start_command : str | None
        Shell command that starts the app (process artifacts only).
    log_excerpt : str
        Tail of the build output.
    """
    kind: str
    reference: str
    start_command: Optional[str] = None
    log_excerpt: str = ""


@dataclass
class RunHandle:
    """
    Live reference to a started workload.

    ``target`` is the container name (containers) or the process id as a
    string (native processes). The handle is the only owner of ``host_port``.
    """
    run_id: str
    host_port: int
    kind: str
    target: str
    pid: Optional[int] = None
    state: str = "starting"
    metadata: dict = field(default_factory=dict)
