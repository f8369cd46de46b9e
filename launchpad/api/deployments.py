"""
Deployment endpoints
    GET  /api/deployments/{run_id}/log?from=N   resumable log read
    GET  /api/deployments/{run_id}/meta         mirrored metadata (record + blob)
    POST /api/deployments/{run_id}/stop         idempotent stop
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Query

from launchpad.api.deps import error_response, get_orchestrator, get_proxy
from launchpad.core.errors import RunNotFound
from launchpad.runs.orchestrator import Orchestrator
from launchpad.services.proxy import ReverseProxy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deployments", tags=["Deployments"])


@router.get("/{run_id}/log")
async def read_log(run_id: str, offset: int = Query(0, alias="from", ge=0),
                   orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        chunk = await asyncio.to_thread(orchestrator.read_log, run_id, offset)
    except RunNotFound as e:
        return error_response(404, str(e) or "no log yet")
    return {
        "ok": True,
        "chunk": chunk.text,
        "nextFrom": chunk.next_offset,
        "eof": chunk.at_end,
        "source": chunk.source,
    }


@router.get("/{run_id}/meta")
async def read_meta(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    record = await asyncio.to_thread(orchestrator.metadata.read_record, run_id)
    blob = await asyncio.to_thread(orchestrator.metadata.read_blob, run_id)
    if record is None and blob is None:
        return error_response(404, "not found")
    return {
        "ok": True,
        "db": record.model_dump(mode="json") if record is not None else None,
        "archive": blob,
    }


@router.post("/{run_id}/stop")
async def stop_deployment(run_id: str,
                          orchestrator: Orchestrator = Depends(get_orchestrator),
                          proxy: ReverseProxy = Depends(get_proxy)):
    try:
        status = await orchestrator.stop(run_id)
    except RunNotFound as e:
        return error_response(404, str(e))
    proxy.invalidate(run_id)
    logger.info("Stop requested for %s -> %s", run_id, status.value)
    return {"ok": True, "deploymentId": run_id, "status": status.value}
