"""Coaching domain schemas - coach profiles and coach applications"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...models import ApplicationStatus
from ..bookings.schemas import SUPPORTED_CURRENCIES


def _currency(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.upper()
    if value not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Currency must be one of {', '.join(SUPPORTED_CURRENCIES)}")
    return value


def _durations(value: Optional[list[int]]) -> Optional[list[int]]:
    if value is not None and any(d <= 0 for d in value):
        raise ValueError("Durations must be positive")
    return value


def _rates(value: Optional[dict[str, int]]) -> Optional[dict[str, int]]:
    if value is None:
        return value
    for minutes, amount in value.items():
        if not minutes.isdigit() or int(minutes) <= 0:
            raise ValueError(f"Rate key must be a duration in minutes: {minutes}")
        if amount < 0:
            raise ValueError("Rates cannot be negative")
    return value


class CoachProfileCreate(BaseModel):
    bio: str = Field(min_length=1, max_length=1000)
    coach_skills: list[str] = []
    years_coaching: Optional[int] = Field(default=None, ge=0)
    certifications: list[str] = []
    hourly_rate: Optional[int] = Field(default=None, ge=0)  # cents
    currency: str = "USD"
    durations: list[int] = []
    rates: dict[str, int] = {}
    default_duration: int = Field(default=60, ge=15, le=240)
    minimum_duration: int = Field(default=30, ge=15, le=240)
    maximum_duration: int = Field(default=120, ge=15, le=240)
    allow_custom_duration: bool = False
    calendly_url: Optional[str] = Field(default=None, max_length=500)
    event_type_url: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        return _currency(v)

    @field_validator("durations")
    @classmethod
    def validate_durations(cls, v):
        return _durations(v)

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, v):
        return _rates(v)


class CoachProfileUpdate(BaseModel):
    bio: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    coach_skills: Optional[list[str]] = None
    years_coaching: Optional[int] = Field(default=None, ge=0)
    certifications: Optional[list[str]] = None
    hourly_rate: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None
    durations: Optional[list[int]] = None
    rates: Optional[dict[str, int]] = None
    default_duration: Optional[int] = Field(default=None, ge=15, le=240)
    minimum_duration: Optional[int] = Field(default=None, ge=15, le=240)
    maximum_duration: Optional[int] = Field(default=None, ge=15, le=240)
    allow_custom_duration: Optional[bool] = None
    calendly_url: Optional[str] = Field(default=None, max_length=500)
    event_type_url: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        return _currency(v)

    @field_validator("durations")
    @classmethod
    def validate_durations(cls, v):
        return _durations(v)

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, v):
        return _rates(v)

    @field_validator(
        "bio",
        "coach_skills",
        "certifications",
        "currency",
        "durations",
        "rates",
        "default_duration",
        "minimum_duration",
        "maximum_duration",
        "allow_custom_duration",
        "is_active",
    )
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class CoachProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    user_ulid: str
    bio: str
    coach_skills: list[str] = []
    years_coaching: Optional[int] = None
    certifications: list[str] = []
    hourly_rate: Optional[int] = None
    currency: str
    durations: list[int] = []
    rates: dict[str, int] = {}
    default_duration: int
    minimum_duration: int
    maximum_duration: int
    allow_custom_duration: bool
    calendly_url: Optional[str] = None
    event_type_url: Optional[str] = None
    is_active: bool


class CoachApplicationCreate(BaseModel):
    experience: str = Field(min_length=1, max_length=5000)
    specialties: list[str] = Field(min_length=1)


class ApplicationReviewRequest(BaseModel):
    status: str
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        v = v.upper()
        if v not in ApplicationStatus.ALL:
            raise ValueError(f"Status must be one of {', '.join(ApplicationStatus.ALL)}")
        return v


class CoachApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    applicant_ulid: str
    experience: str
    specialties: list[str] = []
    status: str
    application_date: datetime
    reviewed_by_ulid: Optional[str] = None
    review_date: Optional[datetime] = None
    notes: Optional[str] = None
