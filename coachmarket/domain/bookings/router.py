"""Booking router - FastAPI endpoints for session booking, cancel and reschedule flows"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ...shared.responses import ok
from .schemas import (
    BookSessionRequest,
    CancelBookingRequest,
    ProposalResponseRequest,
    RescheduleProposalRequest,
    RescheduleRequest,
    SessionResponse,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Bookings"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


def _dump(session) -> dict:
    return SessionResponse.model_validate(session).model_dump(mode="json")


# ============================================================================
# SESSIONS
# ============================================================================


@router.get("/sessions")
async def list_sessions(
    status: Optional[str] = Query(None),
    role: Optional[str] = Query(None, pattern="^(coach|mentee)$"),
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Sessions where the current user is coach or mentee"""
    return ok([_dump(s) for s in service.list_sessions(current_user, status, role)])


@router.get("/sessions/{session_ulid}")
async def get_session(
    session_ulid: str,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return ok(_dump(service.get_session(session_ulid, current_user)))


# ============================================================================
# BOOKING
# ============================================================================


@router.post("/coaching/sessions/book", status_code=201)
async def book_session(
    data: BookSessionRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Book a session with a coach at the coach's advertised rate"""
    session = await service.book_session(data, current_user)
    return ok(_dump(session))


# ============================================================================
# CANCEL / RESCHEDULE
# ============================================================================


@router.post("/bookings/cancel")
async def cancel_booking(
    data: CancelBookingRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Cancel a scheduled session (mentee only, at least 24 hours ahead)"""
    session = await service.cancel_booking(data, current_user)
    return ok(_dump(session))


@router.post("/sessions/{session_ulid}/reschedule")
async def reschedule_session(
    session_ulid: str,
    data: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Move a session to a new time. Returns the newly created session."""
    new_session = await service.reschedule_session(session_ulid, data, current_user)
    return ok(_dump(new_session))


# ============================================================================
# COACH PROPOSALS
# ============================================================================


@router.post("/sessions/{session_ulid}/reschedule-proposal")
async def propose_reschedule(
    session_ulid: str,
    data: RescheduleProposalRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    session = service.propose_reschedule(session_ulid, data, current_user)
    return ok(_dump(session))


@router.post("/sessions/{session_ulid}/reschedule-proposal/respond")
async def respond_to_proposal(
    session_ulid: str,
    data: ProposalResponseRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Mentee accepts (reschedules) or rejects a coach's proposed time"""
    session = await service.respond_to_proposal(session_ulid, data, current_user)
    return ok(_dump(session))
