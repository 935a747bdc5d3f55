"""
Calendly Webhook Routes
Mirrors Calendly invitee events into the CalBooking table
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..config import CALENDLY_WEBHOOK_SECRET
from ..database import get_db
from ..models import BookingStatus, CalBooking, CalendlyIntegration
from ..rate_limiter import create_rate_limiter
from ..shared.responses import ApiError, ok
from ..shared.validators import parse_datetime
from ..webhook_security import verify_calendly_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendly", tags=["calendly-webhooks"])

rate_limit_webhook = create_rate_limiter(
    limit=100,
    window_seconds=60,
    key_prefix="webhook_calendly",
    use_ip=False,
)


@router.post("/webhooks")
async def handle_calendly_webhook(
    request: Request, db: Session = Depends(get_db), _: None = Depends(rate_limit_webhook)
):
    """
    Handle Calendly webhook events - Rate limited to 100 requests per minute
    Supported events: invitee.created, invitee.canceled
    """
    if not CALENDLY_WEBHOOK_SECRET:
        logger.warning("⚠️ CALENDLY_WEBHOOK_SECRET not configured - signature verification skipped")
        body = await request.body()
    else:
        _, body = await verify_calendly_webhook(request, CALENDLY_WEBHOOK_SECRET, raise_on_failure=True)

    try:
        payload = json.loads(body.decode() or "{}")
    except (ValueError, UnicodeDecodeError) as e:
        raise ApiError(400, "INVALID_PAYLOAD", "Failed to parse webhook payload") from e

    if not isinstance(payload, dict):
        raise ApiError(400, "INVALID_PAYLOAD", "Webhook payload must be an object")

    event_type = payload.get("event")
    event_data = payload.get("payload") or {}
    if not isinstance(event_data, dict):
        raise ApiError(400, "INVALID_PAYLOAD", "Webhook payload must contain a payload object")

    if event_type == "invitee.created":
        handled = handle_invitee_created(event_data, db)
    elif event_type == "invitee.canceled":
        handled = handle_invitee_canceled(event_data, db)
    else:
        logger.debug(f"Unhandled Calendly event type: {event_type}")
        handled = False

    return ok({"status": "ok", "event": event_type, "handled": handled})


def _object_field(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ApiError(400, "INVALID_PAYLOAD", f"Webhook field {key} must be an object")
    return value


def _owner_uri(scheduled_event: dict[str, Any]) -> Optional[str]:
    memberships = scheduled_event.get("event_memberships") or []
    if memberships and isinstance(memberships[0], dict):
        return memberships[0].get("user")
    return None


def handle_invitee_created(event_data: dict, db: Session) -> bool:
    """Store a new Calendly booking for the event owner"""
    scheduled_event = _object_field(event_data, "scheduled_event")
    event_uri = scheduled_event.get("uri")
    if not event_uri:
        logger.error("❌ Missing scheduled_event.uri in webhook payload")
        return False

    owner_uri = _owner_uri(scheduled_event)
    integration = (
        db.query(CalendlyIntegration).filter(CalendlyIntegration.calendly_user_uri == owner_uri).first()
        if owner_uri
        else None
    )
    if not integration:
        logger.warning(f"⚠️ No Calendly integration found for owner: {owner_uri}")
        return False

    booking = db.query(CalBooking).filter(CalBooking.cal_booking_uid == event_uri).first()
    if not booking:
        booking = CalBooking(user_ulid=integration.user_ulid, provider="CALENDLY", cal_booking_uid=event_uri)
        db.add(booking)

    location = scheduled_event.get("location") or {}
    booking.title = scheduled_event.get("name")
    booking.start_time = parse_datetime(scheduled_event.get("start_time"))
    booking.end_time = parse_datetime(scheduled_event.get("end_time"))
    booking.attendee_name = event_data.get("name")
    booking.attendee_email = event_data.get("email")
    booking.attendee_time_zone = event_data.get("timezone")
    booking.all_attendees = event_data.get("email")
    booking.meeting_url = location.get("join_url") if isinstance(location, dict) else None
    booking.status = BookingStatus.CONFIRMED
    db.commit()
    logger.info(f"🆕 Calendly booking stored for user {integration.user_ulid}")
    return True


def handle_invitee_canceled(event_data: dict, db: Session) -> bool:
    """Mark a mirrored Calendly booking as cancelled"""
    scheduled_event = _object_field(event_data, "scheduled_event")
    event_uri = scheduled_event.get("uri")
    if not event_uri:
        logger.error("❌ Missing event URI in cancellation webhook")
        return False

    booking = db.query(CalBooking).filter(CalBooking.cal_booking_uid == event_uri).first()
    if not booking:
        logger.warning(f"⚠️ No booking found for cancelled event: {event_uri}")
        return False

    cancellation = _object_field(event_data, "cancellation")
    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = cancellation.get("reason") or "Cancelled via Calendly"
    db.commit()
    return True
