"""
Shared FastAPI dependencies: the process-wide Orchestrator and ReverseProxy.

Routers receive them through ``Depends`` so tests can swap them with
``app.dependency_overrides``.
"""
import logging
from typing import Optional

from fastapi import Depends
from fastapi.responses import JSONResponse

from launchpad.runs.orchestrator import Orchestrator, create_orchestrator
from launchpad.services.proxy import ReverseProxy

logger = logging.getLogger(__name__)

_orchestrator: Optional[Orchestrator] = None
_proxy: Optional[ReverseProxy] = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = create_orchestrator()
        logger.info("Orchestrator initialised")
    return _orchestrator


def get_proxy(orchestrator: Orchestrator = Depends(get_orchestrator)) -> ReverseProxy:
    global _proxy
    if _proxy is None or _proxy.resolver != orchestrator.resolve_target:
        _proxy = ReverseProxy(resolver=orchestrator.resolve_target)
        # A port freed by a stopped or failed run can be handed to the next run
        orchestrator.add_terminal_listener(_proxy.invalidate)
    return _proxy


async def shutdown_dependencies() -> None:
    global _orchestrator, _proxy
    if _proxy is not None:
        await _proxy.aclose()
        _proxy = None
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message, **extra}, status_code=status_code)
