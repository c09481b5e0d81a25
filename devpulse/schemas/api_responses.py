"""
API response schemas for the webhook and admin endpoints.
"""
from typing import Optional
from pydantic import BaseModel


class WebhookAcceptedResponse(BaseModel):
    status: str = "accepted"
    message: str
    event_id: str
    delivery_id: str
    lane: Optional[str] = None
    queued: bool
    response_time_ms: float


class WebhookDuplicateResponse(BaseModel):
    status: str = "duplicate"
    message: str = "Webhook already processed"
    event_id: Optional[str] = None


class ReplayResponse(BaseModel):
    status: str = "replayed"
    delivery_id: str
    task_id: str
    lane: str
