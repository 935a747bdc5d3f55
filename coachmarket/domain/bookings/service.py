"""Booking service - Session lifecycle against Cal.com and Calendly"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import (
    BookingStatus,
    CalBooking,
    CalendlyIntegration,
    Capability,
    CoachingSession,
    CoachProfile,
    SessionStatus,
    User,
)
from ...services.cal_service import CalApiError, CalService
from ...services.cal_token_service import CalTokenError, CalTokenService
from ...services.calendly_service import CalendlyService
from ...services.calendly_token_refresher import CalendlyTokenRefresher
from ...shared.ids import generate_ulid
from ...shared.responses import ApiError
from ...shared.validators import parse_datetime, to_iso
from ...token_crypto import decrypt_token
from .repository import BookingRepository
from .schemas import (
    BookSessionRequest,
    CancelBookingRequest,
    ProposalResponseRequest,
    RescheduleProposalRequest,
    RescheduleRequest,
)

logger = logging.getLogger(__name__)

CANCELLATION_WINDOW = timedelta(hours=24)
DEFAULT_CANCELLATION_REASON = "User requested cancellation"
DEFAULT_RESCHEDULE_REASON = "User requested reschedule"
ACCEPTED_PROPOSAL_REASON = "Mentee accepted coach proposal"

RESCHEDULABLE_STATUSES = {SessionStatus.SCHEDULED, SessionStatus.RESCHEDULED}


def expected_rate(profile: CoachProfile, duration_minutes: int) -> Optional[int]:
    """Price in cents for a duration: an exact rate, else pro rata from the hourly rate"""
    rates = profile.rates or {}
    if str(duration_minutes) in rates:
        return int(rates[str(duration_minutes)])
    hourly = rates.get("60", profile.hourly_rate)
    if hourly is None:
        return None
    return round(int(hourly) * duration_minutes / 60)


class BookingService:
    """Service layer for booking / cancel / reschedule / proposal flows"""

    def __init__(
        self,
        db: Session,
        cal_service: Optional[CalService] = None,
        token_service: Optional[CalTokenService] = None,
        calendly_service: Optional[CalendlyService] = None,
    ):
        self.db = db
        self.repo = BookingRepository()
        self.cal = cal_service or CalService()
        self.tokens = token_service or CalTokenService(db, self.cal)
        self.calendly = calendly_service or CalendlyService()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def list_sessions(self, user: User, status: Optional[str] = None, role: Optional[str] = None) -> list[CoachingSession]:
        if status and status not in SessionStatus.ALL:
            raise ApiError(400, "VALIDATION_ERROR", f"Unknown session status: {status}")
        return self.repo.get_user_sessions(self.db, user.ulid, status, role)

    def get_session(self, session_ulid: str, user: User) -> CoachingSession:
        session = self.repo.get_session(self.db, session_ulid)
        if not session or user.ulid not in (session.coach_ulid, session.mentee_ulid):
            raise ApiError(404, "SESSION_NOT_FOUND", "Session not found")
        return session

    def _get_booking(self, booking_ulid: str, session: CoachingSession) -> CalBooking:
        booking = self.repo.get_cal_booking(self.db, booking_ulid)
        if not booking or not booking.cal_booking_uid:
            raise ApiError(404, "CAL_BOOKING_DATA_NOT_FOUND", "Cal.com booking data not found")
        if booking.ulid != session.cal_booking_ulid:
            logger.warning(f"⚠️ Booking {booking.ulid} does not belong to session {session.ulid}")
            raise ApiError(400, "BOOKING_MISMATCH", "Booking does not belong to this session")
        return booking

    # ------------------------------------------------------------------
    # Book
    # ------------------------------------------------------------------

    def _validate_offer(self, profile: Optional[CoachProfile], data: BookSessionRequest) -> None:
        if not profile or not profile.is_active:
            raise ApiError(400, "COACH_INACTIVE", "Coach is not accepting bookings")

        duration = data.duration_minutes
        if duration not in (profile.durations or []) and not profile.allow_custom_duration:
            raise ApiError(400, "INVALID_DURATION", "Invalid session duration")
        if duration < profile.minimum_duration or duration > profile.maximum_duration:
            raise ApiError(
                400,
                "DURATION_OUT_OF_RANGE",
                f"Duration must be between {profile.minimum_duration} and {profile.maximum_duration} minutes",
            )

        rate = expected_rate(profile, duration)
        if rate is None or data.rate != rate:
            raise ApiError(400, "INVALID_RATE", "Invalid rate for selected duration")
        if data.currency != (profile.currency or "").upper():
            raise ApiError(400, "INVALID_CURRENCY", "Invalid currency")

    def _get_unlinked_booking(self, booking_ulid: str, coach: User) -> CalBooking:
        booking = self.repo.get_cal_booking(self.db, booking_ulid)
        if not booking or booking.status == BookingStatus.CANCELLED:
            raise ApiError(404, "CAL_BOOKING_DATA_NOT_FOUND", "Cal.com booking data not found")
        if booking.user_ulid != coach.ulid:
            raise ApiError(400, "BOOKING_MISMATCH", "Booking does not belong to this coach")
        if self.repo.get_session_for_booking(self.db, booking.ulid):
            raise ApiError(409, "BOOKING_ALREADY_LINKED", "Booking is already linked to a session")
        return booking

    def _calendly_event_type(self, coach: User, profile: CoachProfile) -> tuple[CalendlyIntegration, str]:
        integration = self.repo.get_calendly_integration(self.db, coach.ulid)
        event_type = profile.event_type_url or (integration.event_type_id if integration else None)
        if not integration or integration.status != "active" or not event_type:
            raise ApiError(400, "NO_EVENT_TYPE", "Coach has not configured their event type")
        return integration, event_type

    async def _create_scheduling_link(self, integration: CalendlyIntegration, event_type: str) -> str:
        try:
            if integration.expires_at <= datetime.utcnow():
                await CalendlyTokenRefresher(self.db, self.calendly).refresh_integration(integration)
            link = await self.calendly.create_scheduling_link(decrypt_token(integration.access_token), event_type)
        except httpx.HTTPError as e:
            logger.error(f"❌ [BOOK_SESSION] Calendly scheduling link failed for {integration.user_ulid}: {e}")
            raise ApiError(502, "CALENDLY_API_ERROR", "Failed to create scheduling link") from e

        booking_url = (link.get("resource") or {}).get("booking_url") if isinstance(link, dict) else None
        if not booking_url:
            raise ApiError(502, "CALENDLY_API_ERROR", "Calendly returned no scheduling link")
        return booking_url

    async def book_session(self, data: BookSessionRequest, user: User) -> CoachingSession:
        """
        Book a session with a coach at the coach's advertised rate.

        With a Cal.com booking the session is linked to that mirrored booking.
        Otherwise a single-use Calendly scheduling link is issued for the
        coach's event type.
        """
        coach = self.repo.get_user(self.db, data.coach_ulid)
        if not coach:
            raise ApiError(404, "NOT_FOUND", "Coach not found")
        if Capability.COACH not in (coach.capabilities or []):
            raise ApiError(400, "INVALID_ROLE", "Invalid coach ID")
        if coach.ulid == user.ulid:
            raise ApiError(400, "VALIDATION_ERROR", "You cannot book a session with yourself")

        if data.start_time <= datetime.utcnow():
            raise ApiError(400, "VALIDATION_ERROR", "Start time must be in the future")
        if data.end_time - data.start_time != timedelta(minutes=data.duration_minutes):
            raise ApiError(400, "VALIDATION_ERROR", "Start and end times do not match the session duration")

        profile = self.repo.get_coach_profile(self.db, coach.ulid)
        self._validate_offer(profile, data)

        booking = None
        integration = event_type = None
        if data.cal_booking_ulid:
            booking = self._get_unlinked_booking(data.cal_booking_ulid, coach)
        else:
            integration, event_type = self._calendly_event_type(coach, profile)

        if self.repo.find_overlapping_session(self.db, coach.ulid, data.start_time, data.end_time):
            raise ApiError(409, "TIME_SLOT_TAKEN", "Time slot is no longer available")

        scheduling_url = None
        if integration is not None:
            scheduling_url = await self._create_scheduling_link(integration, event_type)

        try:
            session = self.repo.create_session(
                self.db,
                coach_ulid=coach.ulid,
                mentee_ulid=user.ulid,
                cal_booking_ulid=booking.ulid if booking else None,
                start_time=data.start_time,
                end_time=data.end_time,
                status=SessionStatus.SCHEDULED,
                duration_minutes=data.duration_minutes,
                price_amount=data.rate,
                currency_code=data.currency,
                scheduling_url=scheduling_url,
                zoom_join_url=booking.meeting_url if booking else None,
                rescheduling_history=[],
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ [BOOK_SESSION] Failed to store session for coach {coach.ulid}: {e}")
            raise ApiError(500, "DB_ERROR", "Failed to create session") from e

        logger.info(f"✅ [BOOK_SESSION] Session {session.ulid} booked with coach {coach.ulid} by {user.email}")
        return session

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_booking(self, data: CancelBookingRequest, user: User) -> CoachingSession:
        session = self.repo.get_session(self.db, data.session_ulid)
        if not session:
            raise ApiError(404, "SESSION_NOT_FOUND", "Session not found")
        if session.mentee_ulid != user.ulid:
            raise ApiError(403, "FORBIDDEN", "Only the mentee can cancel this session")
        if session.status == SessionStatus.CANCELLED:
            raise ApiError(400, "ALREADY_CANCELLED", "Session is already cancelled")
        if session.status != SessionStatus.SCHEDULED:
            raise ApiError(400, "INVALID_STATUS", f"Cannot cancel a session with status {session.status}")
        if session.start_time - datetime.utcnow() < CANCELLATION_WINDOW:
            raise ApiError(403, "CANCELLATION_WINDOW_CLOSED", "Sessions cannot be cancelled within 24 hours of the start time")

        booking = self._get_booking(data.cal_booking_ulid, session)
        reason = data.cancellation_reason or DEFAULT_CANCELLATION_REASON

        try:
            await self.tokens.call_with_token_refresh(
                session.coach_ulid,
                lambda token: self.cal.cancel_booking(token, booking.cal_booking_uid, reason),
            )
        except CalTokenError as e:
            logger.error(f"❌ [CANCEL_BOOKING] Coach token unavailable for session {session.ulid}: {e.message}")
            raise ApiError(500, e.code, "Failed to get coach calendar token") from e
        except CalApiError as e:
            raise ApiError(502, "CAL_API_ERROR", f"Failed to cancel booking with Cal.com: {e.message}") from e

        now = datetime.utcnow()
        try:
            session.status = SessionStatus.CANCELLED
            session.cancelled_at = now
            session.cancellation_reason = reason
            session.cancelled_by = user.email
            session.cancelled_by_ulid = user.ulid
            booking.status = BookingStatus.CANCELLED
            booking.cancellation_reason = reason
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ [CANCEL_BOOKING] Cal.com cancelled but DB update failed for {session.ulid}: {e}")
            raise ApiError(500, "DB_ERROR", "Booking cancelled with Cal.com but failed to update session") from e

        self.db.refresh(session)
        logger.info(f"✅ [CANCEL_BOOKING] Session {session.ulid} cancelled by {user.email}")
        return session

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def _reschedule_with_cal(
        self, coach_ulid: str, booking_uid: str, start: str, rescheduled_by: str, reason: str
    ) -> dict[str, Any]:
        attempts = {"count": 0}

        async def call(token: str) -> dict[str, Any]:
            attempts["count"] += 1
            return await self.cal.reschedule_booking(token, booking_uid, start, rescheduled_by, reason)

        try:
            return await self.tokens.call_with_token_refresh(coach_ulid, call)
        except CalTokenError as e:
            raise ApiError(500, e.code, f"Failed to get a valid Cal.com token: {e.message}") from e
        except CalApiError as e:
            code = "CAL_API_RETRY_ERROR" if attempts["count"] > 1 else "CAL_API_ERROR"
            raise ApiError(502, code, f"Cal.com reschedule failed: {e.message}") from e

    async def reschedule_session(
        self,
        session_ulid: str,
        data: RescheduleRequest,
        user: User,
        allow_pending_proposal: bool = False,
    ) -> CoachingSession:
        session = self.repo.get_session(self.db, session_ulid)
        if not session:
            raise ApiError(404, "SESSION_NOT_FOUND", "Session not found")
        if user.ulid not in (session.coach_ulid, session.mentee_ulid):
            raise ApiError(403, "UNAUTHORIZED", "You are not a participant of this session")

        allowed = set(RESCHEDULABLE_STATUSES)
        if allow_pending_proposal:
            allowed.add(SessionStatus.COACH_PROPOSED_RESCHEDULE)
        if session.status not in allowed:
            raise ApiError(400, "INVALID_STATUS", f"Cannot reschedule a session with status {session.status}")
        if data.new_end_time <= data.new_start_time:
            raise ApiError(400, "VALIDATION_ERROR", "New end time must be after new start time")

        booking = self._get_booking(data.cal_booking_ulid, session)
        reason = data.rescheduling_reason or DEFAULT_RESCHEDULE_REASON

        response = await self._reschedule_with_cal(
            session.coach_ulid, booking.cal_booking_uid, to_iso(data.new_start_time), user.email, reason
        )

        result = response.get("data") if isinstance(response, dict) else None
        if not isinstance(response, dict) or response.get("status") != "success" or not isinstance(result, dict):
            raise ApiError(502, "CAL_INVALID_RESPONSE", "Unexpected response from Cal.com reschedule")
        new_start = parse_datetime(result.get("start"))
        new_end = parse_datetime(result.get("end"))
        if not new_start or not new_end:
            raise ApiError(502, "CAL_INVALID_RESPONSE", "Cal.com reschedule response missing start/end")

        history_event = {
            "timestamp": to_iso(datetime.utcnow()),
            "oldStart": to_iso(session.start_time),
            "oldEnd": to_iso(session.end_time),
            "newStart": to_iso(new_start),
            "newEnd": to_iso(new_end),
            "rescheduledBy": user.email,
            "reason": reason,
        }

        try:
            self._apply_cal_result(booking, result, new_start, new_end)

            new_session = CoachingSession(
                ulid=generate_ulid(),
                coach_ulid=session.coach_ulid,
                mentee_ulid=session.mentee_ulid,
                cal_booking_ulid=booking.ulid,
                start_time=new_start,
                end_time=new_end,
                status=SessionStatus.SCHEDULED,
                price_amount=session.price_amount,
                payment_intent_id=session.payment_intent_id,
                zoom_join_url=result.get("meetingUrl") or session.zoom_join_url,
                original_session_ulid=session.original_session_ulid or session.ulid,
                rescheduled_from_ulid=session.ulid,
                rescheduling_reason=reason,
                rescheduling_history=list(session.rescheduling_history or []) + [history_event],
            )
            self.db.add(new_session)

            session.status = SessionStatus.RESCHEDULED
            session.rescheduled_to_ulid = new_session.ulid
            session.rescheduling_reason = reason
            session.proposed_start_time = None
            session.proposed_end_time = None
            session.reschedule_proposal_reason = None
            session.reschedule_proposed_by_ulid = None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ [RESCHEDULE] Cal.com rescheduled but DB update failed for {session.ulid}: {e}")
            raise ApiError(500, "DB_ERROR", "Booking rescheduled with Cal.com but failed to update sessions") from e

        self.db.refresh(new_session)
        logger.info(f"✅ [RESCHEDULE] Session {session.ulid} rescheduled to {new_session.ulid}")
        return new_session

    @staticmethod
    def _apply_cal_result(booking: CalBooking, result: dict[str, Any], start: datetime, end: datetime) -> None:
        # A reschedule issues a new Cal.com booking uid
        if result.get("uid"):
            booking.cal_booking_uid = result["uid"]
        booking.start_time = start
        booking.end_time = end
        status = str(result.get("status") or "").upper()
        booking.status = BookingStatus.CONFIRMED if status in ("", "ACCEPTED") else status
        if result.get("title"):
            booking.title = result["title"]
        if result.get("meetingUrl"):
            booking.meeting_url = result["meetingUrl"]
        attendees = result.get("attendees")
        if isinstance(attendees, list) and attendees:
            booking.attendee_name = attendees[0].get("name")
            booking.attendee_email = attendees[0].get("email")
            booking.attendee_time_zone = attendees[0].get("timeZone")
            booking.all_attendees = ", ".join(a.get("email", "") for a in attendees)

    # ------------------------------------------------------------------
    # Coach proposals
    # ------------------------------------------------------------------

    def propose_reschedule(
        self, session_ulid: str, data: RescheduleProposalRequest, user: User
    ) -> CoachingSession:
        session = self.repo.get_session(self.db, session_ulid)
        if not session:
            raise ApiError(404, "SESSION_NOT_FOUND", "Session not found")
        if session.coach_ulid != user.ulid:
            raise ApiError(403, "UNAUTHORIZED", "Only the coach can propose a new time")
        if session.status != SessionStatus.SCHEDULED:
            raise ApiError(400, "INVALID_STATUS", f"Cannot propose a new time for a session with status {session.status}")
        if data.proposed_start_time <= datetime.utcnow():
            raise ApiError(400, "VALIDATION_ERROR", "Proposed start time must be in the future")
        if data.proposed_end_time <= data.proposed_start_time:
            raise ApiError(400, "VALIDATION_ERROR", "Proposed end time must be after proposed start time")

        logger.info(f"🗓️ Coach {user.ulid} proposed a new time for session {session.ulid}")
        return self.repo.update_session(
            self.db,
            session,
            status=SessionStatus.COACH_PROPOSED_RESCHEDULE,
            proposed_start_time=data.proposed_start_time,
            proposed_end_time=data.proposed_end_time,
            reschedule_proposal_reason=data.reason,
            reschedule_proposed_by_ulid=user.ulid,
        )

    async def respond_to_proposal(
        self, session_ulid: str, data: ProposalResponseRequest, user: User
    ) -> CoachingSession:
        session = self.repo.get_session(self.db, session_ulid)
        if not session:
            raise ApiError(404, "SESSION_NOT_FOUND", "Session not found")
        if session.mentee_ulid != user.ulid:
            raise ApiError(403, "UNAUTHORIZED", "Only the mentee can respond to this proposal")
        if session.status != SessionStatus.COACH_PROPOSED_RESCHEDULE:
            raise ApiError(400, "INVALID_STATUS", "Session has no pending reschedule proposal")

        if not data.accepted:
            logger.info(f"Mentee {user.ulid} rejected proposal for session {session.ulid}")
            return self.repo.update_session(
                self.db,
                session,
                status=SessionStatus.SCHEDULED,
                proposed_start_time=None,
                proposed_end_time=None,
                reschedule_proposal_reason=None,
                reschedule_proposed_by_ulid=None,
            )

        if not session.proposed_start_time or not session.proposed_end_time or not session.cal_booking_ulid:
            raise ApiError(400, "MISSING_PROPOSAL_DATA", "Proposal is missing times or booking reference")

        request = RescheduleRequest(
            cal_booking_ulid=session.cal_booking_ulid,
            new_start_time=session.proposed_start_time,
            new_end_time=session.proposed_end_time,
            rescheduling_reason=data.reason or ACCEPTED_PROPOSAL_REASON,
        )
        try:
            return await self.reschedule_session(session.ulid, request, user, allow_pending_proposal=True)
        except ApiError as e:
            raise ApiError(e.status_code, "RESCHEDULE_FAILED", f"Failed to reschedule session: {e.message}") from e
