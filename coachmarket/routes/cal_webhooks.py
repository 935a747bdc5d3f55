"""
Cal.com Webhook Routes
Public receiver for booking lifecycle events from Cal.com
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..config import CAL_WEBHOOK_SECRET
from ..database import get_db
from ..rate_limiter import create_rate_limiter
from ..services.booking_sync import (
    ACKNOWLEDGED_EVENTS,
    BOOKING_EVENTS,
    BookingPayloadError,
    BookingSyncError,
    BookingSyncService,
)
from ..shared.responses import ApiError, ok
from ..webhook_security import verify_cal_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cal/webhooks", tags=["cal-webhooks"])

rate_limit_webhook = create_rate_limiter(
    limit=100,
    window_seconds=60,
    key_prefix="webhook_cal",
    use_ip=False,
)


@router.post("/receiver")
async def receive_cal_webhook(
    request: Request, db: Session = Depends(get_db), _: None = Depends(rate_limit_webhook)
):
    """
    Handle Cal.com webhook events - Rate limited to 100 requests per minute
    Booking events update the CalBooking mirror; meeting and form events are acknowledged.
    """
    _, body = await verify_cal_webhook(request, CAL_WEBHOOK_SECRET, raise_on_failure=True)

    try:
        event = json.loads(body.decode() or "{}")
    except (ValueError, UnicodeDecodeError) as e:
        raise ApiError(400, "INVALID_PAYLOAD", "Failed to parse webhook payload") from e

    if not isinstance(event, dict):
        raise ApiError(400, "INVALID_PAYLOAD", "Webhook payload must be an object")

    trigger_event = event.get("triggerEvent") or event.get("type")
    if not trigger_event:
        raise ApiError(400, "MISSING_TRIGGER", "Missing triggerEvent/type in payload")

    payload = event.get("payload") or {}
    if not isinstance(payload, dict):
        raise ApiError(400, "INVALID_PAYLOAD", "Webhook payload must contain a payload object")
    logger.info(f"📥 Cal.com webhook {trigger_event} for booking {payload.get('uid')}")

    if trigger_event in BOOKING_EVENTS:
        try:
            BookingSyncService(db).process_booking_event(trigger_event, payload)
        except BookingPayloadError as e:
            logger.warning(f"⚠️ Cal.com webhook {trigger_event} rejected: {e}")
            raise ApiError(400, "INVALID_PAYLOAD", str(e)) from e
        except BookingSyncError as e:
            logger.error(f"❌ Cal.com webhook {trigger_event} failed: {e}")
            raise ApiError(500, "WEBHOOK_PROCESSING_ERROR", "Failed to process booking event") from e
    elif trigger_event in ACKNOWLEDGED_EVENTS:
        logger.info(f"Cal.com {trigger_event} acknowledged for booking {payload.get('uid')}")
    else:
        logger.debug(f"Unhandled Cal.com event type: {trigger_event}")
        return ok(
            {
                "success": False,
                "message": f"Unhandled event type: {trigger_event}",
                "event_type": trigger_event,
            }
        )

    return ok({"success": True, "event_type": trigger_event})
