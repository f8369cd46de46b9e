"""
Run State Machine

    QUEUED ──► BUILDING ──► RUNNING ──► STOPPED
       │           │           │
       └───────────┴───────────┴──────► FAILED

STOPPED and FAILED are terminal. QUEUED → FAILED covers a stop or a
port/validation failure before the build starts.
"""
from typing import Dict, FrozenSet

from launchpad.core.errors import InvalidTransition
from launchpad.models.run import RunStatus

ALLOWED_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.BUILDING, RunStatus.FAILED}),
    RunStatus.BUILDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.STOPPED, RunStatus.FAILED}),
    RunStatus.STOPPED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: RunStatus, target: RunStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(f"cannot move from {current.value} to {target.value}")
