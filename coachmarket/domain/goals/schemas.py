"""Goal domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...shared.validators import parse_datetime

GOAL_TYPES = (
    "sales_volume",
    "commission_income",
    "gci",
    "avg_sale_price",
    "listings",
    "buyer_transactions",
    "closed_deals",
    "days_on_market",
    "coaching_sessions",
    "group_sessions",
    "session_revenue",
    "active_mentees",
    "mentee_satisfaction",
    "response_time",
    "session_completion",
    "mentee_milestones",
    "new_clients",
    "referrals",
    "client_retention",
    "reviews",
    "market_share",
    "territory_expansion",
    "social_media",
    "website_traffic",
    "certifications",
    "training_hours",
    "networking_events",
    "custom",
)


def _goal_type(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in GOAL_TYPES:
        raise ValueError(f"Unknown goal type: {value}")
    return value


def _deadline(value):
    if value is None:
        return value
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError("Invalid deadline")
    return parsed


class GoalCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    goal_type: str
    target: int = Field(gt=0)
    current: int = Field(default=0, ge=0)
    deadline: datetime

    @field_validator("goal_type")
    @classmethod
    def validate_type(cls, v):
        return _goal_type(v)

    @field_validator("deadline", mode="before")
    @classmethod
    def normalize_deadline(cls, v):
        return _deadline(v)


class GoalUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    goal_type: Optional[str] = None
    target: Optional[int] = Field(default=None, gt=0)
    current: Optional[int] = Field(default=None, ge=0)
    deadline: Optional[datetime] = None

    @field_validator("goal_type")
    @classmethod
    def validate_type(cls, v):
        return _goal_type(v)

    @field_validator("deadline", mode="before")
    @classmethod
    def normalize_deadline(cls, v):
        return _deadline(v)

    @field_validator("title", "goal_type", "target", "current", "deadline")
    @classmethod
    def reject_null(cls, v):
        # Only description may be cleared
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class GoalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ulid: str
    title: str
    description: Optional[str] = None
    goal_type: str
    target: int
    current: int
    deadline: datetime
    status: str
