"""Pydantic request models for the REST API."""

from typing import Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    actor_id: str
    role: str  # "sponsor" or "worker"


class CreateChannelRequest(BaseModel):
    worker_id: str
    hourly_rate: float = Field(gt=0)
    escrow_amount: float = Field(gt=0)
    max_daily_hours: Optional[float] = Field(default=None, gt=0, le=24)
    ledger_channel_id: Optional[str] = None


class ConfirmChannelRequest(BaseModel):
    ledger_channel_id: str


class ClockInRequest(BaseModel):
    notes: str = ""


class ClosureRequestBody(BaseModel):
    message: str = ""


class RejectRequest(BaseModel):
    reason: str = ""
