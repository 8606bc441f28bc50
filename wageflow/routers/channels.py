"""Channels router - /api/channels/* (create, confirm, status, clock-in, closure)."""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from starlette.requests import Request

from wageflow.deps import get_server
from wageflow.models import (
    ClockInRequest,
    ClosureRequestBody,
    ConfirmChannelRequest,
    CreateChannelRequest,
)
from wageflow.state_machine import Role, party_role

router = APIRouter()


async def _channel_for_party(srv, channel_id: str, actor) -> dict:
    """Load a channel the caller may see: one of its parties, or admin."""
    channel = await srv.channels.get_channel(channel_id)
    if actor.role != Role.ADMIN:
        party_role(channel, actor.id)
    return channel


@router.post("/api/channels")
async def create_channel(request: Request, req: CreateChannelRequest, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    if actor.role != Role.SPONSOR:
        raise HTTPException(status_code=403, detail="Sponsor account required to open a channel")
    channel = await srv.channels.create_channel(
        sponsor_id=actor.id,
        worker_id=req.worker_id,
        hourly_rate=req.hourly_rate,
        escrow_amount=req.escrow_amount,
        ledger_channel_id=req.ledger_channel_id,
        max_daily_hours=req.max_daily_hours,
    )
    return await srv.channels.get_channel_status(channel["channel_id"])


@router.get("/api/channels")
async def list_channels(
    request: Request, x_api_key: str = Header(default=""),
    state: Optional[str] = None, limit: int = 50, offset: int = 0,
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    party_id = None if actor.role == Role.ADMIN else actor.id
    items = await srv.channels.list_channels(party_id=party_id, state=state, limit=limit, offset=offset)
    return {"items": items, "limit": limit, "offset": offset}


@router.get("/api/channels/{channel_id}")
async def get_channel_status(request: Request, channel_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    await _channel_for_party(srv, channel_id, actor)
    return await srv.channels.get_channel_status(channel_id)


@router.post("/api/channels/{channel_id}/confirm")
async def confirm_channel(
    request: Request, channel_id: str, req: ConfirmChannelRequest, x_api_key: str = Header(default=""),
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    channel = await srv.channels.confirm_channel(channel_id, req.ledger_channel_id, actor.id)
    return await srv.channels.get_channel_status(channel["channel_id"])


@router.get("/api/channels/{channel_id}/sessions")
async def list_channel_sessions(
    request: Request, channel_id: str, x_api_key: str = Header(default=""),
    limit: int = 50, offset: int = 0,
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    await _channel_for_party(srv, channel_id, actor)
    items = await srv.channels.list_sessions(channel_id, limit=limit, offset=offset)
    return {"items": items, "limit": limit, "offset": offset}


@router.get("/api/channels/{channel_id}/closure-requests")
async def list_channel_closure_requests(request: Request, channel_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    await _channel_for_party(srv, channel_id, actor)
    return {"items": await srv.channels.list_closure_requests(channel_id)}


@router.post("/api/channels/{channel_id}/clock-in")
async def clock_in(
    request: Request, channel_id: str, req: Optional[ClockInRequest] = None,
    x_api_key: str = Header(default=""),
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    notes = req.notes if req is not None else ""
    return await srv.tracker.clock_in(actor.id, channel_id, notes=notes)


@router.post("/api/channels/{channel_id}/closure")
async def request_closure(
    request: Request, channel_id: str, req: Optional[ClosureRequestBody] = None,
    x_api_key: str = Header(default=""),
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    message = req.message if req is not None else ""
    outcome = await srv.negotiator.request_closure(channel_id, actor.id, message=message)
    return outcome.to_dict()


@router.post("/api/channels/{channel_id}/finalize-expired")
async def finalize_expired(request: Request, channel_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    outcome = await srv.negotiator.finalize_expired_closure(channel_id, actor.id)
    return outcome.to_dict()
