"""
ANY /api/proxy/{run_id}/{path}
Relays preview traffic to the run's workload through ReverseProxy.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Request, Response

from launchpad.api.deps import error_response, get_proxy
from launchpad.core.errors import RunNotFound, UpstreamUnavailable
from launchpad.services.proxy import ReverseProxy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxy", tags=["Proxy"])

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


async def _relay(run_id: str, path: str, request: Request, proxy: ReverseProxy) -> Response:
    try:
        port = await asyncio.to_thread(proxy.resolve, run_id)
    except RunNotFound:
        return error_response(404, "not found")
    if not port:
        return error_response(503, "not running")

    try:
        upstream = await proxy.forward(
            run_id,
            port,
            request.method,
            path,
            query=request.url.query,
            headers=request.headers,
            body=await request.body(),
        )
    except UpstreamUnavailable as e:
        return error_response(504 if e.timed_out else 502, str(e))

    response = Response(content=upstream.content, status_code=upstream.status_code)
    for key, value in upstream.headers:
        response.headers.append(key, value)
    return response


@router.api_route("/{run_id}", methods=_METHODS)
async def proxy_root(run_id: str, request: Request, proxy: ReverseProxy = Depends(get_proxy)):
    return await _relay(run_id, "", request, proxy)


@router.api_route("/{run_id}/{path:path}", methods=_METHODS)
async def proxy_path(run_id: str, path: str, request: Request, proxy: ReverseProxy = Depends(get_proxy)):
    return await _relay(run_id, path, request, proxy)
