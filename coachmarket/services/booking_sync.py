"""Reconcile Cal.com booking webhooks into the local CalBooking mirror"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import BookingStatus, CalBooking, CalendarIntegration
from ..shared.validators import parse_datetime

logger = logging.getLogger(__name__)

BOOKING_CREATED = "BOOKING_CREATED"
BOOKING_UPDATED = "BOOKING_UPDATED"
BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"
BOOKING_CANCELLED = "BOOKING_CANCELLED"
BOOKING_REJECTED = "BOOKING_REJECTED"
BOOKING_REQUESTED = "BOOKING_REQUESTED"
MEETING_ENDED = "MEETING_ENDED"
FORM_SUBMITTED = "FORM_SUBMITTED"

BOOKING_EVENTS = {
    BOOKING_CREATED,
    BOOKING_UPDATED,
    BOOKING_RESCHEDULED,
    BOOKING_CANCELLED,
    BOOKING_REJECTED,
    BOOKING_REQUESTED,
}
ACKNOWLEDGED_EVENTS = {MEETING_ENDED, FORM_SUBMITTED}

DEFAULT_CANCELLATION_REASON = "Cancelled via Cal.com"


class BookingSyncError(Exception):
    """Raised when a booking event cannot be reconciled"""

    pass


class BookingPayloadError(BookingSyncError):
    """Raised when a booking payload has the wrong shape"""

    pass


def booking_status_for(trigger_event: str) -> str:
    if trigger_event == BOOKING_REJECTED:
        return BookingStatus.REJECTED
    if trigger_event == BOOKING_REQUESTED:
        return BookingStatus.PENDING
    return BookingStatus.CONFIRMED


def _meeting_url(payload: dict[str, Any]) -> Optional[str]:
    metadata = payload.get("metadata") or {}
    if isinstance(metadata, dict) and metadata.get("videoCallUrl"):
        return metadata["videoCallUrl"]
    location = payload.get("location")
    if isinstance(location, str) and location.startswith("http"):
        return location
    return None


class BookingSyncService:
    def __init__(self, db: Session):
        self.db = db

    def find_integration(self, organizer_id: Any) -> Optional[CalendarIntegration]:
        """Organizer ids arrive as numbers or numeric strings"""
        try:
            managed_user_id = int(organizer_id)
        except (TypeError, ValueError):
            return None
        return (
            self.db.query(CalendarIntegration)
            .filter(CalendarIntegration.cal_managed_user_id == managed_user_id)
            .first()
        )

    def process_booking_event(self, trigger_event: str, payload: dict[str, Any]) -> Optional[CalBooking]:
        """
        Apply a booking webhook to the local mirror.

        Returns the affected booking, or None for a cancellation of a booking
        we never stored. Raises BookingSyncError when the event cannot be applied.
        """
        booking_uid = payload.get("uid")
        organizer = payload.get("organizer") or {}
        attendees = payload.get("attendees")

        if not isinstance(organizer, dict):
            raise BookingPayloadError(f"Booking {booking_uid} organizer must be an object")
        if not booking_uid:
            raise BookingSyncError("Booking payload missing uid")
        if not organizer.get("id"):
            raise BookingSyncError(f"Booking {booking_uid} missing organizer id")

        integration = self.find_integration(organizer.get("id"))
        if not integration:
            raise BookingSyncError(f"No calendar integration for organizer {organizer.get('id')}")

        if not isinstance(attendees, list):
            raise BookingPayloadError(f"Booking {booking_uid} attendees must be a list")
        if not all(isinstance(a, dict) for a in attendees):
            raise BookingPayloadError(f"Booking {booking_uid} attendees must be objects")

        primary = attendees[0] if attendees else {}
        all_attendees = ", ".join(a.get("email") or "" for a in attendees)

        booking = self.db.query(CalBooking).filter(CalBooking.cal_booking_uid == booking_uid).first()

        try:
            if booking:
                if trigger_event == BOOKING_CANCELLED:
                    booking.status = BookingStatus.CANCELLED
                    booking.cancellation_reason = payload.get("cancellationReason") or DEFAULT_CANCELLATION_REASON
                    logger.info(f"🗓️ Booking {booking_uid} cancelled via Cal.com")
                else:
                    self._apply_details(booking, trigger_event, payload, primary, all_attendees)
                    logger.info(f"🗓️ Booking {booking_uid} updated ({booking.status})")
            else:
                if trigger_event == BOOKING_CANCELLED:
                    logger.info(f"Ignoring cancellation of unknown booking {booking_uid}")
                    return None
                booking = CalBooking(user_ulid=integration.user_ulid, provider="CAL", cal_booking_uid=booking_uid)
                self._apply_details(booking, trigger_event, payload, primary, all_attendees)
                self.db.add(booking)
                logger.info(f"🆕 Booking {booking_uid} stored for user {integration.user_ulid}")

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise BookingSyncError(f"Failed to store booking {booking_uid}: {e}") from e

        self.db.refresh(booking)
        return booking

    @staticmethod
    def _apply_details(
        booking: CalBooking,
        trigger_event: str,
        payload: dict[str, Any],
        primary: dict[str, Any],
        all_attendees: str,
    ) -> None:
        booking.title = payload.get("title")
        booking.description = payload.get("description") or ""
        booking.start_time = parse_datetime(payload.get("startTime"))
        booking.end_time = parse_datetime(payload.get("endTime"))
        booking.attendee_email = primary.get("email")
        booking.attendee_name = primary.get("name")
        booking.attendee_time_zone = primary.get("timeZone")
        booking.all_attendees = all_attendees
        booking.status = booking_status_for(trigger_event)
        if payload.get("eventTypeId") is not None:
            booking.cal_event_type_id = str(payload["eventTypeId"])
        meeting_url = _meeting_url(payload)
        if meeting_url:
            booking.meeting_url = meeting_url
