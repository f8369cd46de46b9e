"""
Run Record Model
Pydantic model mirrored to the metadata store and to meta/<id>.json.
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from launchpad.models.run import RunStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunRecord(BaseModel):
    deployment_id: str
    owner: str = ""
    repo: str = ""
    branch: str = ""
    status: RunStatus = RunStatus.QUEUED
    host_port: Optional[int] = None
    handle: Optional[str] = None
    image: Optional[str] = None
    log_ref: Optional[str] = None
    log_length: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
