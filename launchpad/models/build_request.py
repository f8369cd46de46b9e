"""
Build Request Model
===================
Immutable description of one submission: which repository/branch to
build and which environment to inject into the workload.

Fields:
    owner            — GitHub account or organisation
    repo             — repository name
    branch           — branch to check out (default: main)
    env              — environment variables for the workload (keys unique)
    correlation_id   — run identifier matching RUN_ID_PATTERN; generated when omitted
"""
import re
import uuid
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from launchpad.utils.naming import validate_run_id

_COORDINATE_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
_BRANCH_RE = re.compile(r"^[A-Za-z0-9_.\-/]+$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class BuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    branch: str = "main"
    env: Dict[str, str] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @field_validator("owner", "repo")
    @classmethod
    def validate_coordinate(cls, v: str) -> str:
        v = v.strip()
        if not _COORDINATE_RE.match(v) or v in (".", ".."):
            raise ValueError("owner/repo may only contain letters, digits, '_', '.', '-'")
        return v

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        v = v.strip()
        if not _BRANCH_RE.match(v) or ".." in v or v.startswith(("/", "-")):
            raise ValueError(f"invalid branch name: {v!r}")
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key in v:
            if not _ENV_KEY_RE.match(key):
                raise ValueError(f"invalid environment variable name: {key!r}")
        return {k: str(val) for k, val in v.items()}

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v: str) -> str:
        # The id names the container, the image tag, the log file and archive keys
        return validate_run_id(v.strip())
