"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...shared.validators import parse_datetime, validate_ulid


def _ulid(value: str) -> str:
    if not validate_ulid(value):
        raise ValueError("Invalid ULID format")
    return value.upper()


def _utc(value: Any) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError("Invalid datetime")
    return parsed


SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP")


class BookSessionRequest(BaseModel):
    coach_ulid: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int = Field(gt=0)
    rate: int = Field(gt=0)  # cents
    currency: str
    cal_booking_ulid: Optional[str] = None

    @field_validator("coach_ulid")
    @classmethod
    def validate_coach_id(cls, v):
        return _ulid(v)

    @field_validator("cal_booking_ulid")
    @classmethod
    def validate_booking_id(cls, v):
        return _ulid(v) if v is not None else v

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def normalize_times(cls, v):
        return _utc(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        v = v.upper()
        if v not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Currency must be one of {', '.join(SUPPORTED_CURRENCIES)}")
        return v


class CancelBookingRequest(BaseModel):
    session_ulid: str
    cal_booking_ulid: str
    cancellation_reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("session_ulid", "cal_booking_ulid")
    @classmethod
    def validate_ids(cls, v):
        return _ulid(v)


class RescheduleRequest(BaseModel):
    cal_booking_ulid: str
    new_start_time: datetime
    new_end_time: datetime
    rescheduling_reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("cal_booking_ulid")
    @classmethod
    def validate_booking_id(cls, v):
        return _ulid(v)

    @field_validator("new_start_time", "new_end_time", mode="before")
    @classmethod
    def normalize_times(cls, v):
        return _utc(v)


class RescheduleProposalRequest(BaseModel):
    proposed_start_time: datetime
    proposed_end_time: datetime
    reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("proposed_start_time", "proposed_end_time", mode="before")
    @classmethod
    def normalize_times(cls, v):
        return _utc(v)


class ProposalResponseRequest(BaseModel):
    accepted: bool
    reason: Optional[str] = Field(default=None, max_length=1000)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    coach_ulid: str
    mentee_ulid: str
    cal_booking_ulid: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: str
    duration_minutes: Optional[int] = None
    price_amount: Optional[int] = None
    currency_code: Optional[str] = None
    scheduling_url: Optional[str] = None
    zoom_join_url: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    original_session_ulid: Optional[str] = None
    rescheduled_from_ulid: Optional[str] = None
    rescheduled_to_ulid: Optional[str] = None
    rescheduling_reason: Optional[str] = None
    rescheduling_history: list[dict[str, Any]] = []
    proposed_start_time: Optional[datetime] = None
    proposed_end_time: Optional[datetime] = None
    reschedule_proposal_reason: Optional[str] = None
    coach_absent: bool = False
    mentee_absent: bool = False
