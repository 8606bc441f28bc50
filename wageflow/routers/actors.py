"""Actors router - /api/actors/*."""

from fastapi import APIRouter, Header
from starlette.requests import Request

from wageflow.deps import get_server
from wageflow.models import RegisterRequest

router = APIRouter()


@router.post("/api/actors/register")
async def register_actor(request: Request, req: RegisterRequest):
    srv = get_server(request)
    actor = await srv.auth.register(req.actor_id, req.role)
    return {"actor_id": actor["actor_id"], "role": actor["role"], "api_key": actor["api_key"]}


@router.get("/api/actors/me")
async def whoami(request: Request, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    return {"actor_id": actor.id, "role": actor.role.value}


@router.post("/api/actors/me/rotate-key")
async def rotate_key(request: Request, x_api_key: str = Header(default="")):
    """Issue a new API key; the old one stops working immediately."""
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    api_key = await srv.auth.rotate_key(actor.id)
    return {"actor_id": actor.id, "api_key": api_key}
