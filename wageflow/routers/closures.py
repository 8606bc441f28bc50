"""Closure requests router - /api/closure-requests/*."""

from typing import Optional

from fastapi import APIRouter, Header
from starlette.requests import Request

from wageflow.deps import get_server
from wageflow.models import RejectRequest
from wageflow.state_machine import Role

router = APIRouter()


@router.get("/api/closure-requests")
async def list_closure_requests(request: Request, x_api_key: str = Header(default="")):
    """Sponsors see requests awaiting their decision; workers see their own history."""
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    if actor.role == Role.SPONSOR:
        items = await srv.negotiator.list_pending_for_sponsor(actor.id)
    else:
        items = await srv.negotiator.list_for_requester(actor.id)
    return {"items": items}


@router.post("/api/closure-requests/{request_id}/approve")
async def approve(request: Request, request_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    outcome = await srv.negotiator.approve_closure(request_id, actor.id)
    return outcome.to_dict()


@router.post("/api/closure-requests/{request_id}/reject")
async def reject(
    request: Request, request_id: str, req: Optional[RejectRequest] = None,
    x_api_key: str = Header(default=""),
):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    reason = req.reason if req is not None else ""
    return await srv.negotiator.reject_closure(request_id, actor.id, reason=reason)


@router.post("/api/closure-requests/{request_id}/cancel")
async def cancel(request: Request, request_id: str, x_api_key: str = Header(default="")):
    srv = get_server(request)
    actor = await srv.auth.get_current_actor(x_api_key)
    return await srv.negotiator.cancel_closure_request(request_id, actor.id)
