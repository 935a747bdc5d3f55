import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import CAL_WEBHOOK_URL
from ..database import get_db
from ..models import Capability, SystemRole, User
from ..services.cal_service import CalApiError, CalService
from ..services.cal_token_service import CalTokenError, CalTokenService
from ..shared.responses import ApiError, ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cal", tags=["cal"])
cal_service = CalService()


class RefreshTokenRequest(BaseModel):
    force_refresh: bool = False
    user_ulid: Optional[str] = None


class ManagedUserRequest(BaseModel):
    time_zone: str = Field(default="America/New_York", max_length=100)


class EnsureWebhookRequest(BaseModel):
    subscriber_url: Optional[str] = None
    triggers: Optional[list[str]] = None


def get_token_service(db: Session = Depends(get_db)) -> CalTokenService:
    return CalTokenService(db, cal_service)


@router.get("/tokens/status")
async def get_token_status(
    current_user: User = Depends(get_current_user),
    tokens: CalTokenService = Depends(get_token_service),
):
    return ok(tokens.get_token_info(current_user.ulid))


@router.post("/tokens/refresh")
async def refresh_managed_user_token(
    data: RefreshTokenRequest,
    current_user: User = Depends(get_current_user),
    tokens: CalTokenService = Depends(get_token_service),
):
    """Refresh the caller's Cal.com tokens; system owners may refresh any user"""
    target_ulid = data.user_ulid or current_user.ulid
    if target_ulid != current_user.ulid and current_user.system_role != SystemRole.SYSTEM_OWNER:
        raise ApiError(403, "FORBIDDEN", "Cannot refresh tokens for another user")

    result = await tokens.refresh_tokens(target_ulid, data.force_refresh)
    if not result["success"]:
        logger.warning(f"⚠️ Cal.com token refresh failed for {target_ulid}: {result.get('error')}")
        status_code = 404 if result.get("error") == "Calendar integration not found" else 502
        raise ApiError(status_code, "CAL_TOKEN_REFRESH_ERROR", result.get("error") or "Token refresh failed")

    info = tokens.get_token_info(target_ulid)
    return ok(
        {
            "refreshed": "access_token" in result,
            "expires_at": info.get("expires_at"),
            "method": result.get("method"),
        }
    )


@router.post("/managed-users")
async def create_managed_user(
    data: ManagedUserRequest,
    current_user: User = Depends(get_current_user),
    tokens: CalTokenService = Depends(get_token_service),
):
    """Provision a Cal.com managed user for a coach and store its tokens"""
    if Capability.COACH not in (current_user.capabilities or []):
        raise ApiError(403, "FORBIDDEN", "Only coaches can connect a Cal.com calendar")

    existing = tokens.get_integration(current_user.ulid)
    if existing and existing.cal_managed_user_id:
        raise ApiError(409, "ALREADY_CONNECTED", "Cal.com managed user already exists")

    name = " ".join(filter(None, [current_user.first_name, current_user.last_name])) or current_user.email
    try:
        payload = await cal_service.create_managed_user(current_user.email, name, data.time_zone)
    except CalApiError as e:
        raise ApiError(502, "CAL_API_ERROR", f"Failed to create Cal.com managed user: {e.message}") from e

    if not payload.get("accessToken") or not (payload.get("user") or {}).get("id"):
        raise ApiError(502, "CAL_INVALID_RESPONSE", "Cal.com managed user response missing tokens")

    integration = tokens.save_managed_user_integration(current_user, payload)
    logger.info(f"✅ Cal.com managed user {integration.cal_managed_user_id} created for {current_user.email}")
    return ok(
        {
            "integration_ulid": integration.ulid,
            "managed_user_id": integration.cal_managed_user_id,
            "username": integration.cal_username,
        }
    )


@router.post("/webhooks/ensure")
async def ensure_webhook(
    data: EnsureWebhookRequest,
    current_user: User = Depends(get_current_user),
    tokens: CalTokenService = Depends(get_token_service),
):
    """Make sure Cal.com delivers booking events for the caller's calendar"""
    integration = tokens.get_integration(current_user.ulid)
    if not integration:
        raise ApiError(404, "INTEGRATION_NOT_FOUND", "Calendar integration not found")

    subscriber_url = data.subscriber_url or CAL_WEBHOOK_URL
    try:
        webhook = await tokens.call_with_token_refresh(
            current_user.ulid,
            lambda token: cal_service.ensure_webhook_exists(token, subscriber_url, data.triggers),
        )
    except CalTokenError as e:
        raise ApiError(401, e.code, e.message) from e
    except CalApiError as e:
        raise ApiError(502, "CAL_API_ERROR", f"Failed to ensure webhook: {e.message}") from e

    integration.webhook_id = str(webhook.get("id")) if webhook.get("id") is not None else None
    tokens.db.commit()
    return ok({"webhook": webhook})
