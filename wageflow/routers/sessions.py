"""Sessions router - /api/sessions/*."""

from fastapi import APIRouter, Header
from starlette.requests import Request

from wageflow.deps import get_server

router = APIRouter()


@router.post("/api/sessions/{session_id}/clock-out")
async def clock_out(request: Request, session_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    return await srv.tracker.clock_out(actor.id, session_id)


@router.get("/api/sessions/active")
async def active_sessions(request: Request, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    return {"items": await srv.tracker.list_active_sessions(actor.id)}
