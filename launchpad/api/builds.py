"""
POST /api/builds
GET  /api/builds/{run_id}/stream
================================
Submit a build-and-run request, and follow it live over Server-Sent Events.

Stream protocol:
    event: status   {status, logs, deployment}   first message, full log so far
    event: logs     {append}                     new log bytes since the last message
    event: status   {status, deployment}         after every poll
    event: error    {message}                    a poll failed; the stream continues

The stream ends once the run is terminal and its log is drained, or
when the client disconnects.
"""
import asyncio
import codecs
import json
import logging
from typing import AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sse_starlette.sse import EventSourceResponse

from launchpad.api.deps import error_response, get_orchestrator
from launchpad.core.config import STREAM_POLL_INTERVAL
from launchpad.core.errors import LaunchpadError, NoPortAvailable, RunNotFound
from launchpad.models.build_request import BuildRequest
from launchpad.models.run import RunStatus
from launchpad.runs.orchestrator import Orchestrator
from launchpad.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Builds"])

_STREAM_POLICY = RetryPolicy(interval=STREAM_POLL_INTERVAL, max_attempts=None)
_TERMINAL = {s.value for s in RunStatus if s.is_terminal}


class BuildBody(BaseModel):
    owner: str
    repo: str
    branch: str = "main"
    env: Dict[str, str] = Field(default_factory=dict)
    deploymentId: Optional[str] = None


def _event(event: str, data: dict) -> dict:
    return {"event": event, "data": json.dumps(data, default=str)}


@router.post("/builds")
async def create_build(body: BuildBody, wait: bool = False,
                       orchestrator: Orchestrator = Depends(get_orchestrator)):
    fields = {"owner": body.owner, "repo": body.repo, "branch": body.branch, "env": body.env}
    if body.deploymentId:
        fields["correlation_id"] = body.deploymentId
    try:
        request = BuildRequest(**fields)
    except ValidationError as e:
        return error_response(422, "invalid build request", details=e.errors(include_url=False, include_context=False))

    try:
        run = await (orchestrator.execute(request) if wait else orchestrator.submit(request))
    except ValueError as e:
        return error_response(409, str(e))

    if not wait:
        return JSONResponse(
            {"ok": True, "deploymentId": run.run_id, "status": run.status.value},
            status_code=202,
        )

    if run.status is RunStatus.RUNNING:
        return JSONResponse(
            {
                "ok": True,
                "deploymentId": run.run_id,
                "hostPort": run.port,
                "image": run.artifact.reference if run.artifact else None,
                "container": run.handle.target if run.handle else None,
            },
            status_code=201,
        )
    status_code = 503 if run.error_kind == NoPortAvailable.kind else 500
    return error_response(status_code, run.error or "build failed", deploymentId=run.run_id)


@router.get("/builds/{run_id}/stream")
async def stream_build(run_id: str, request: Request,
                       orchestrator: Orchestrator = Depends(get_orchestrator)):

    async def event_stream() -> AsyncIterator[dict]:
        # Offsets are bytes; decode incrementally so split characters survive
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        offset = 0
        try:
            view = await asyncio.to_thread(orchestrator.status, run_id)
            chunk = await asyncio.to_thread(orchestrator.read_log, run_id, 0)
            offset = chunk.next_offset
            yield _event("status", {"status": view["status"], "logs": decoder.decode(chunk.data),
                                    "deployment": view})
        except RunNotFound:
            yield _event("status", {"status": "UNKNOWN", "logs": ""})
        except LaunchpadError as e:
            yield _event("error", {"message": str(e)})

        async for _attempt in _STREAM_POLICY.async_attempts():
            if await request.is_disconnected():
                logger.info("Stream client for %s disconnected", run_id)
                return
            try:
                view = await asyncio.to_thread(orchestrator.status, run_id)
                chunk = await asyncio.to_thread(orchestrator.read_log, run_id, offset)
            except RunNotFound:
                continue
            except LaunchpadError as e:
                yield _event("error", {"message": str(e) or "poll error"})
                continue

            if chunk.data:
                offset = chunk.next_offset
                yield _event("logs", {"append": decoder.decode(chunk.data)})
            yield _event("status", {"status": view["status"], "deployment": view})
            if view["status"] in _TERMINAL and not chunk.data:
                return

    return EventSourceResponse(
        event_stream(),
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
