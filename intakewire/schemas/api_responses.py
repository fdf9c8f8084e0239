"""
API request/response schemas for the management endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from intakewire.schemas.followup import SequenceStep, StopRules


# === Webhooks ===

class WebhookEndpointCreate(BaseModel):
    url: str
    events: list[str]
    active: bool = True


class WebhookEndpointUpdate(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None
    active: Optional[bool] = None


class WebhookEndpointSummary(BaseModel):
    id: str
    url: str
    events: list[str]
    active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class WebhookEndpointWithSecret(WebhookEndpointSummary):
    secret: str


class RotateSecretResponse(BaseModel):
    id: str
    secret: str


class WebhookTestResult(BaseModel):
    delivery_id: str
    status: str
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None


class WebhookDeliverySummary(BaseModel):
    id: str
    endpoint_id: str
    event_type: str
    status: str
    attempt_count: int
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class EmitEventRequest(BaseModel):
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)


class EmitEventResponse(BaseModel):
    event_type: str
    delivery_ids: list[str]


# === Follow-ups ===

class FollowupSequenceSummary(BaseModel):
    id: str
    name: str
    trigger_event: str
    steps: list[SequenceStep]
    stop_rules: StopRules
    is_active: bool
    created_at: datetime


class TriggerFollowupRequest(BaseModel):
    sequence_id: Optional[str] = None
    trigger_event: str = "lead.created"


class CancelFollowupRequest(BaseModel):
    reason: str = Field(default="cancelled by user", max_length=200)
    sequence_id: Optional[str] = None


class FollowupJobSummary(BaseModel):
    id: str
    sequence_id: str
    step_index: int
    channel: str
    scheduled_at: datetime
    status: str
    sent_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    last_error: Optional[str] = None


# === Experiments ===

class ExperimentSummary(BaseModel):
    key: str
    variants: list[str]
    assignments: dict[str, int] = Field(default_factory=dict)


class AssignVariantRequest(BaseModel):
    lead_id: str


class AssignVariantResponse(BaseModel):
    experiment_id: str
    lead_id: str
    variant: str
