import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional

import httpx
import redis
from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import CRON_SECRET
from ..database import get_db
from ..models import CalendlyIntegration, User
from ..rate_limiter import get_redis_client
from ..services.calendly_service import CalendlyService
from ..services.calendly_token_refresher import CalendlyTokenRefresher
from ..shared.responses import ApiError, ok
from ..shared.validators import to_iso
from ..token_crypto import encrypt_token
from ..webhook_security import constant_time_compare

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendly", tags=["calendly"])
cron_router = APIRouter(prefix="/cron", tags=["cron"])
calendly_service = CalendlyService()

OAUTH_STATE_TTL_SECONDS = 600

# Used when Redis is not configured. Format: {state: (user_ulid, expires_at)}
pending_states: dict[str, tuple[str, float]] = {}


class CalendlyTokenRequest(BaseModel):
    code: str
    state: str


def _state_key(state: str) -> str:
    return f"oauth_state:calendly:{state}"


def save_oauth_state(state: str, user_ulid: str) -> None:
    client = get_redis_client()
    if client is not None:
        client.set(_state_key(state), user_ulid, ex=OAUTH_STATE_TTL_SECONDS)
        return

    now = time.time()
    for key in [k for k, (_, expires_at) in pending_states.items() if expires_at <= now]:
        del pending_states[key]
    pending_states[state] = (user_ulid, now + OAUTH_STATE_TTL_SECONDS)


def consume_oauth_state(state: str, user_ulid: str) -> bool:
    """True if the state was issued to this user and has not expired. Each state works once."""
    client = get_redis_client()
    if client is not None:
        owner = client.getdel(_state_key(state))
    else:
        entry = pending_states.pop(state, None)
        owner = entry[0] if entry and entry[1] > time.time() else None
    return bool(owner) and constant_time_compare(owner, user_ulid)


@router.get("/connect")
async def initiate_calendly_connection(current_user: User = Depends(get_current_user)):
    """Initiate Calendly OAuth flow"""
    state = secrets.token_urlsafe(32)
    try:
        auth_url = calendly_service.get_authorization_url(state)
    except ValueError as e:
        raise ApiError(500, "CALENDLY_NOT_CONFIGURED", str(e)) from e
    try:
        save_oauth_state(state, current_user.ulid)
    except redis.RedisError as e:
        logger.error(f"❌ Failed to store Calendly OAuth state: {e}")
        raise ApiError(503, "SERVICE_UNAVAILABLE", "Unable to start Calendly connection") from e
    return ok({"authorization_url": auth_url, "state": state})


@router.post("/callback")
async def calendly_oauth_callback(
    data: CalendlyTokenRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Handle OAuth callback and store tokens"""
    try:
        valid_state = consume_oauth_state(data.state, current_user.ulid)
    except redis.RedisError as e:
        logger.error(f"❌ Failed to verify Calendly OAuth state: {e}")
        raise ApiError(503, "SERVICE_UNAVAILABLE", "Unable to verify Calendly connection") from e
    if not valid_state:
        logger.warning(f"⚠️ Rejected Calendly callback with unknown state for user {current_user.ulid}")
        raise ApiError(400, "INVALID_STATE", "Invalid or expired OAuth state")

    try:
        token_data = await calendly_service.exchange_code_for_token(data.code)
        user_info = await calendly_service.get_user_info(token_data["access_token"])
    except (httpx.HTTPError, KeyError) as e:
        logger.error(f"❌ Failed to connect Calendly for user {current_user.ulid}: {str(e)}")
        raise ApiError(400, "CALENDLY_OAUTH_ERROR", "Failed to connect Calendly") from e

    resource = user_info.get("resource", {})
    expires_at = datetime.utcnow() + timedelta(seconds=token_data.get("expires_in", 7200))

    integration = (
        db.query(CalendlyIntegration).filter(CalendlyIntegration.user_ulid == current_user.ulid).first()
    )
    if not integration:
        integration = CalendlyIntegration(user_ulid=current_user.ulid)
        db.add(integration)

    integration.access_token = encrypt_token(token_data["access_token"])
    integration.refresh_token = encrypt_token(token_data["refresh_token"])
    integration.expires_at = expires_at
    integration.scope = token_data.get("scope")
    integration.organization = resource.get("current_organization")
    integration.calendly_user_uri = resource.get("uri")
    integration.calendly_user_email = resource.get("email")
    integration.scheduling_url = resource.get("scheduling_url")
    integration.status = "active"
    integration.failed_refresh_count = 0
    integration.last_sync_at = datetime.utcnow()
    db.commit()
    db.refresh(integration)

    # Default event type is best effort; the connection stands without it
    try:
        event_types = await calendly_service.list_event_types(token_data["access_token"], resource.get("uri"))
        collection = event_types.get("collection", [])
        if collection:
            integration.event_type_id = collection[0].get("uri")
            db.commit()
    except httpx.HTTPError as event_err:
        logger.warning(f"⚠️ Failed to auto-select event type: {event_err}")

    logger.info(f"✅ Calendly connected for user {current_user.ulid}")
    return ok(
        {
            "message": "Calendly connected successfully",
            "email": integration.calendly_user_email,
            "scheduling_url": integration.scheduling_url,
            "default_event_set": integration.event_type_id is not None,
        }
    )


@router.get("/status")
async def get_calendly_status(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    integration = (
        db.query(CalendlyIntegration).filter(CalendlyIntegration.user_ulid == current_user.ulid).first()
    )
    if not integration:
        return ok({"connected": False})

    return ok(
        {
            "connected": integration.status == "active",
            "status": integration.status,
            "email": integration.calendly_user_email,
            "scheduling_url": integration.scheduling_url,
            "expires_at": to_iso(integration.expires_at),
            "failed_refresh_count": integration.failed_refresh_count,
        }
    )


@cron_router.get("/refresh-calendly-tokens")
async def refresh_calendly_tokens(
    authorization: Optional[str] = Header(None), db: Session = Depends(get_db)
):
    """Refresh Calendly tokens expiring within the hour. Called by the scheduler."""
    if not CRON_SECRET or not constant_time_compare(authorization or "", f"Bearer {CRON_SECRET}"):
        raise ApiError(401, "UNAUTHORIZED", "Unauthorized")

    results = await CalendlyTokenRefresher(db).refresh_expiring_tokens()
    if results is None:
        return ok({"message": "No tokens to refresh"})
    return ok(results)
