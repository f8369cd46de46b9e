"""
Errors
======
Failure taxonomy for the build-and-run pipeline.

Components raise these at their boundary; third-party exceptions
(subprocess, docker, httpx, botocore) never leak past the component
that called the library.
"""
from typing import Optional


class LaunchpadError(Exception):
    """Base class for every pipeline failure."""

    kind = "ERROR"

    def __init__(self, message: str = "", log_tail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.log_tail = log_tail

    def __str__(self) -> str:
        return self.message or self.kind


class SourceUnavailable(LaunchpadError):
    kind = "SOURCE_UNAVAILABLE"


class ConfigInvalid(LaunchpadError):
    kind = "CONFIG_INVALID"


class BuildFailed(LaunchpadError):
    kind = "BUILD_FAILED"

    def __init__(self, exit_code: int, log_tail: str = "", message: Optional[str] = None) -> None:
        super().__init__(message or f"build command exited with code {exit_code}", log_tail)
        self.exit_code = exit_code


class NoPortAvailable(LaunchpadError):
    kind = "NO_PORT_AVAILABLE"


class StartupTimeout(LaunchpadError):
    kind = "STARTUP_TIMEOUT"


class RuntimeCrash(LaunchpadError):
    kind = "RUNTIME_CRASH"


class StopFailed(LaunchpadError):
    """Raised internally only; callers always observe a completed stop."""

    kind = "STOP_FAILED"


class RunNotFound(LaunchpadError):
    kind = "RUN_NOT_FOUND"


class InvalidTransition(LaunchpadError):
    kind = "INVALID_TRANSITION"


class UpstreamUnavailable(LaunchpadError):
    """The proxied workload did not answer."""

    kind = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str = "", timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
