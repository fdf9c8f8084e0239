"""
Follow-up sequence definitions - validated before they are stored as JSONB.
"""
from typing import Optional
from pydantic import BaseModel, Field, field_validator

FOLLOWUP_CHANNELS = ("sms", "email", "note")

# Max delay of a single step: 90 days
MAX_STEP_DELAY_MINUTES = 90 * 24 * 60


class SequenceStep(BaseModel):
    delay_minutes: int = Field(..., ge=0, le=MAX_STEP_DELAY_MINUTES, description="Offset from trigger time")
    channel: str = Field(default="sms")
    message_template: str = Field(..., min_length=1, max_length=2000)

    @field_validator("channel")
    @classmethod
    def _known_channel(cls, value: str) -> str:
        if value not in FOLLOWUP_CHANNELS:
            raise ValueError(f"channel must be one of {', '.join(FOLLOWUP_CHANNELS)}")
        return value


class StopRules(BaseModel):
    stop_on_statuses: list[str] = Field(default_factory=list)
    stop_on_response: bool = True


class SequenceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    trigger_event: str = Field(default="lead.created", max_length=100)
    steps: list[SequenceStep] = Field(..., min_length=1, max_length=20)
    stop_rules: StopRules = Field(default_factory=StopRules)
    is_active: bool = True

    @field_validator("steps")
    @classmethod
    def _steps_in_schedule_order(cls, steps: list[SequenceStep]) -> list[SequenceStep]:
        delays = [s.delay_minutes for s in steps]
        if delays != sorted(delays):
            raise ValueError("step delays must be non-decreasing")
        return steps


class SequenceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    trigger_event: Optional[str] = Field(default=None, max_length=100)
    steps: Optional[list[SequenceStep]] = Field(default=None, min_length=1, max_length=20)
    stop_rules: Optional[StopRules] = None
    is_active: Optional[bool] = None

    @field_validator("steps")
    @classmethod
    def _steps_in_schedule_order(cls, steps: Optional[list[SequenceStep]]):
        if steps is not None:
            delays = [s.delay_minutes for s in steps]
            if delays != sorted(delays):
                raise ValueError("step delays must be non-decreasing")
        return steps
