"""
Operator API
============
Routes over the PhoenixLoop stored on ``app.state.phoenix``.

Routes:
    GET  /health
    POST /builds/{build_id}/failure      start a repair session (202)
    GET  /sessions                       all sessions (?active=true for running ones)
    GET  /sessions/{session_id}
    POST /sessions/{session_id}/cancel
    GET  /circuit-breaker                breaker stats incl. remaining cooldown
    POST /circuit-breaker/reset
    GET  /stats                          loop, orchestrator and commit stats

Error mapping:
    NoRepairableErrorError → 422
    PhoenixDisabledError   → 503
    unknown session id     → 404
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from selfheal.agents.phoenix_loop import PhoenixLoop
from selfheal.core.exceptions import NoRepairableErrorError, PhoenixDisabledError
from selfheal.models.build_error import BuildContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Phoenix"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------
class BuildFailureRequest(BaseModel):
    log_lines: List[str]
    command: Optional[str] = None
    exit_code: Optional[int] = None
    last_operation: str = "build"
    files: Dict[str, str] = Field(default_factory=dict)


def _phoenix(request: Request) -> PhoenixLoop:
    return request.app.state.phoenix


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check(request: Request):
    phoenix = _phoenix(request)
    return {
        "status": "ok",
        "phoenix_enabled": phoenix.enabled,
        "active_sessions": len(phoenix.active_sessions()),
    }


@router.post("/builds/{build_id}/failure", status_code=202)
async def report_build_failure(build_id: str, body: BuildFailureRequest, request: Request):
    """Classify the failed build's logs and start a repair session for it."""
    context = BuildContext(
        command=body.command,
        exit_code=body.exit_code,
        last_operation=body.last_operation,
        files=body.files,
    )
    try:
        session = _phoenix(request).start_session(build_id, body.log_lines, context)
    except NoRepairableErrorError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PhoenixDisabledError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return session.model_dump(mode="json")


@router.get("/sessions")
async def list_sessions(request: Request, active: bool = False):
    phoenix = _phoenix(request)
    sessions = phoenix.active_sessions() if active else phoenix.all_sessions()
    return [s.model_dump(mode="json") for s in sessions]


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    session = _phoenix(request).get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.model_dump(mode="json")


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, request: Request):
    session = _phoenix(request).cancel_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    logger.info("Operator cancelled session %s", session_id)
    return session.model_dump(mode="json")


@router.get("/circuit-breaker")
async def circuit_breaker_stats(request: Request):
    return _phoenix(request).orchestrator.circuit_breaker.stats().model_dump()


@router.post("/circuit-breaker/reset")
async def reset_circuit_breaker(request: Request):
    orchestrator = _phoenix(request).orchestrator
    orchestrator.reset_circuit_breaker()
    logger.info("Operator reset the circuit breaker")
    return orchestrator.circuit_breaker.stats().model_dump()


@router.get("/stats")
async def get_stats(request: Request):
    phoenix = _phoenix(request)
    return {
        "phoenix": phoenix.stats().model_dump(),
        "repair": phoenix.orchestrator.stats(),
        "commits": phoenix.auto_commit.stats(),
    }
