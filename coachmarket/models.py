from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .shared.ids import generate_ulid


class SystemRole:
    SYSTEM_OWNER = "SYSTEM_OWNER"
    SYSTEM_MODERATOR = "SYSTEM_MODERATOR"
    USER = "USER"

    ALL = (SYSTEM_OWNER, SYSTEM_MODERATOR, USER)


class Capability:
    COACH = "COACH"
    MENTEE = "MENTEE"

    ALL = (COACH, MENTEE)


class SessionStatus:
    SCHEDULED = "SCHEDULED"
    RESCHEDULED = "RESCHEDULED"
    COACH_PROPOSED_RESCHEDULE = "COACH_PROPOSED_RESCHEDULE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"

    ALL = (
        SCHEDULED,
        RESCHEDULED,
        COACH_PROPOSED_RESCHEDULE,
        COMPLETED,
        CANCELLED,
        NO_SHOW,
        DISPUTED,
        REFUNDED,
    )


class BookingStatus:
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class GoalStatus:
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"


class TicketStatus:
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class ApplicationStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    ALL = (PENDING, APPROVED, REJECTED)


class User(Base):
    __tablename__ = "users"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    clerk_user_id = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    profile_image_url = Column(String(500), nullable=True)
    system_role = Column(String(50), default=SystemRole.USER, nullable=False)
    capabilities = Column(JSON, default=list, nullable=False)  # ["COACH", "MENTEE"]
    is_coach = Column(Boolean, default=False, nullable=False)
    is_mentee = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_connect_account_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    calendar_integrations = relationship(
        "CalendarIntegration", back_populates="user", cascade="all, delete-orphan"
    )
    calendly_integration = relationship(
        "CalendlyIntegration", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    coach_profile = relationship(
        "CoachProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )


class CalendarIntegration(Base):
    """Cal.com managed user integration. Tokens are stored Fernet encrypted."""

    __tablename__ = "calendar_integrations"
    __table_args__ = (UniqueConstraint("user_ulid", "provider", name="uq_integration_user_provider"),)

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    provider = Column(String(20), default="CAL", nullable=False)
    cal_managed_user_id = Column(Integer, nullable=True, index=True)
    cal_username = Column(String(255), nullable=True)
    cal_access_token = Column(Text, nullable=True)
    cal_refresh_token = Column(Text, nullable=True)
    cal_access_token_expires_at = Column(DateTime, nullable=True)
    time_zone = Column(String(100), nullable=True)
    webhook_id = Column(String(255), nullable=True)
    sync_enabled = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="calendar_integrations")


class CalendlyIntegration(Base):
    __tablename__ = "calendly_integrations"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), unique=True, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    scope = Column(String(255), nullable=True)
    organization = Column(String(500), nullable=True)
    calendly_user_uri = Column(String(500), nullable=True, index=True)
    calendly_user_email = Column(String(255), nullable=True)
    scheduling_url = Column(String(500), nullable=True)
    event_type_id = Column(String(500), nullable=True)  # Default event type URI
    status = Column(String(20), default="active", nullable=False)  # active, error, disconnected
    failed_refresh_count = Column(Integer, default=0, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="calendly_integration")


class CalBooking(Base):
    """Local mirror of a booking held by Cal.com or Calendly"""

    __tablename__ = "cal_bookings"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    provider = Column(String(20), default="CAL", nullable=False)  # CAL, CALENDLY
    cal_booking_uid = Column(String(500), unique=True, nullable=False, index=True)
    cal_event_type_id = Column(String(255), nullable=True)
    title = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    status = Column(String(20), default=BookingStatus.CONFIRMED, nullable=False)
    attendee_name = Column(String(255), nullable=True)
    attendee_email = Column(String(255), nullable=True)
    attendee_time_zone = Column(String(100), nullable=True)
    all_attendees = Column(Text, nullable=True)  # Comma separated attendee emails
    location = Column(String(500), nullable=True)
    meeting_url = Column(String(500), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CoachingSession(Base):
    __tablename__ = "sessions"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    coach_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    mentee_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    cal_booking_ulid = Column(String(26), ForeignKey("cal_bookings.ulid"), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(40), default=SessionStatus.SCHEDULED, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=True)
    price_amount = Column(Integer, nullable=True)  # cents
    currency_code = Column(String(3), nullable=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    zoom_join_url = Column(String(500), nullable=True)
    scheduling_url = Column(String(500), nullable=True)  # Calendly single-use link

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(255), nullable=True)  # email of the canceller
    cancelled_by_ulid = Column(String(26), nullable=True)

    # Reschedule chain
    original_session_ulid = Column(String(26), nullable=True, index=True)
    rescheduled_from_ulid = Column(String(26), nullable=True)
    rescheduled_to_ulid = Column(String(26), nullable=True)
    rescheduling_reason = Column(Text, nullable=True)
    rescheduling_history = Column(JSON, default=list, nullable=False)

    # Coach reschedule proposal
    proposed_start_time = Column(DateTime, nullable=True)
    proposed_end_time = Column(DateTime, nullable=True)
    reschedule_proposal_reason = Column(Text, nullable=True)
    reschedule_proposed_by_ulid = Column(String(26), nullable=True)

    coach_absent = Column(Boolean, default=False, nullable=False)
    mentee_absent = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    coach = relationship("User", foreign_keys=[coach_ulid])
    mentee = relationship("User", foreign_keys=[mentee_ulid])
    cal_booking = relationship("CalBooking")


class Goal(Base):
    __tablename__ = "goals"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    goal_type = Column(String(50), nullable=False)
    target = Column(Integer, nullable=False)
    current = Column(Integer, default=0, nullable=False)
    deadline = Column(DateTime, nullable=False)
    status = Column(String(20), default=GoalStatus.IN_PROGRESS, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="goals")


class CoachProfile(Base):
    """Bookable coach profile. Rates are in cents, keyed by duration in minutes."""

    __tablename__ = "coach_profiles"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), unique=True, nullable=False)
    bio = Column(Text, nullable=False)
    coach_skills = Column(JSON, default=list, nullable=False)
    years_coaching = Column(Integer, nullable=True)
    certifications = Column(JSON, default=list, nullable=False)
    hourly_rate = Column(Integer, nullable=True)  # cents
    currency = Column(String(3), default="USD", nullable=False)
    durations = Column(JSON, default=list, nullable=False)  # [30, 60]
    rates = Column(JSON, default=dict, nullable=False)  # {"60": 15000}
    default_duration = Column(Integer, default=60, nullable=False)
    minimum_duration = Column(Integer, default=30, nullable=False)
    maximum_duration = Column(Integer, default=120, nullable=False)
    allow_custom_duration = Column(Boolean, default=False, nullable=False)
    calendly_url = Column(String(500), nullable=True)
    event_type_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="coach_profile")


class CoachApplication(Base):
    __tablename__ = "coach_applications"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    applicant_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    experience = Column(Text, nullable=False)
    specialties = Column(JSON, default=list, nullable=False)
    status = Column(String(20), default=ApplicationStatus.PENDING, nullable=False, index=True)
    application_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    reviewed_by_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=True)
    review_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    applicant = relationship("User", foreign_keys=[applicant_ulid])


class SupportTicket(Base):
    __tablename__ = "support_tickets"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    user_ulid = Column(String(26), ForeignKey("users.ulid"), nullable=False, index=True)
    session_ulid = Column(String(26), ForeignKey("sessions.ulid"), nullable=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(50), nullable=False)  # issue type
    status = Column(String(20), default=TicketStatus.OPEN, nullable=False)
    priority = Column(String(20), default="MEDIUM", nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), default="usd", nullable=False)
    interval = Column(String(20), default="month", nullable=False)
    stripe_price_id = Column(String(255), nullable=True)
    features = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Dispute(Base):
    __tablename__ = "disputes"

    ulid = Column(String(26), primary_key=True, default=generate_ulid)
    stripe_dispute_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    session_ulid = Column(String(26), ForeignKey("sessions.ulid"), nullable=True, index=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), nullable=False)
    status = Column(String(50), nullable=False)
    reason = Column(String(100), nullable=True)
    evidence_due_by = Column(DateTime, nullable=True)
    evidence = Column(JSON, nullable=True)
    stripe_refund_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
