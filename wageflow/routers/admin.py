"""Admin router - /api/status, /api/discrepancies, /api/admin/*."""

from typing import Optional

from fastapi import APIRouter, Header
from starlette.requests import Request

from wageflow.deps import get_server
from wageflow.state_machine import ChannelState

router = APIRouter()


@router.get("/")
async def root(request: Request):
    srv = get_server(request)
    return {
        "service": "Wageflow Payroll Channels",
        "api_port": srv.api_port,
        "ledger": "simulator" if srv.ledger_simulator is not None else srv.ledger_url,
    }


@router.get("/api/status")
async def server_status(request: Request):
    srv = get_server(request)
    report = srv.reconciler.last_report
    return {
        "channels": {s.value: await srv.storage.channels.count(state=s.value) for s in ChannelState},
        "open_sessions": await srv.storage.sessions.count_open(),
        "discrepancies": await srv.storage.discrepancies.count(),
        "last_reconcile": report.to_dict() if report is not None else None,
    }


@router.get("/api/discrepancies")
async def list_discrepancies(
    request: Request, x_api_key: str = Header(default=""),
    channel_id: Optional[str] = None, limit: int = 100,
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key)
    return {"items": await srv.channels.list_discrepancies(channel_id=channel_id, limit=limit)}


@router.post("/api/admin/reconcile")
async def run_reconcile(request: Request, x_api_key: str = Header(default="")):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key)
    report = await srv.reconciler.run_once()
    return report.to_dict()


@router.post("/api/admin/sweep")
async def run_sweep(request: Request, x_api_key: str = Header(default="")):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key)
    return {"timed_out": await srv.tracker.sweep_timed_out_sessions()}
