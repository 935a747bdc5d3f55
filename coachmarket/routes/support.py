import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import CoachingSession, SessionStatus, SupportTicket, TicketStatus, User
from ..shared.responses import ApiError, ok
from ..shared.validators import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/support", tags=["support"])


class ReportIssueRequest(BaseModel):
    session_ulid: str = Field(min_length=26, max_length=26)
    issue_type: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1, max_length=2000)


def effective_status(session: CoachingSession) -> str:
    """A scheduled session whose start has passed counts as completed"""
    if session.status == SessionStatus.SCHEDULED and session.start_time < datetime.utcnow():
        return SessionStatus.COMPLETED
    return session.status


def _ticket_payload(ticket: SupportTicket) -> dict:
    return {
        "ulid": ticket.ulid,
        "session_ulid": ticket.session_ulid,
        "title": ticket.title,
        "description": ticket.description,
        "category": ticket.category,
        "status": ticket.status,
        "created_at": to_iso(ticket.created_at),
    }


@router.post("/session-issues", status_code=201)
async def report_session_issue(
    data: ReportIssueRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Open a support ticket about a completed session"""
    session = (
        db.query(CoachingSession)
        .filter(
            CoachingSession.ulid == data.session_ulid,
            or_(CoachingSession.mentee_ulid == current_user.ulid, CoachingSession.coach_ulid == current_user.ulid),
        )
        .first()
    )
    if not session:
        raise ApiError(
            404, "NOT_FOUND", "Session not found or you are not authorized to report issues for it."
        )

    if effective_status(session) != SessionStatus.COMPLETED:
        raise ApiError(400, "INVALID_OPERATION", "Support requests can only be made for completed sessions.")

    ticket = SupportTicket(
        user_ulid=current_user.ulid,
        session_ulid=session.ulid,
        title=f"Issue Reported for Session: {session.ulid[:8]}... - Type: {data.issue_type}",
        description=data.description,
        category=data.issue_type,
        status=TicketStatus.OPEN,
    )
    db.add(ticket)

    if data.issue_type == "coach_absent":
        session.coach_absent = True
    elif data.issue_type == "mentee_absent":
        session.mentee_absent = True

    db.commit()
    db.refresh(ticket)
    logger.info(f"🎫 Support ticket {ticket.ulid} opened by {current_user.email} for session {session.ulid}")
    return ok({"support_ticket_ulid": ticket.ulid, "message": "Support ticket created successfully."})


@router.get("/tickets")
async def list_my_tickets(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    tickets = (
        db.query(SupportTicket)
        .filter(SupportTicket.user_ulid == current_user.ulid)
        .order_by(SupportTicket.created_at.desc())
        .all()
    )
    return ok([_ticket_payload(t) for t in tickets])
