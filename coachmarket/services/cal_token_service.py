"""
Cal.com token lifecycle

Single place that reads, refreshes and stores Cal.com managed user tokens.
Refresh-loop tracking and the update debounce live in process memory and are
not shared between instances.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy.orm import Session

from ..models import CalendarIntegration, User
from ..shared.validators import parse_datetime, to_iso
from ..token_crypto import decrypt_token, encrypt_token
from .cal_service import CalApiError, CalService, is_token_expired_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_REFRESH_COOLDOWN_SECONDS = 30
MAX_REFRESH_ATTEMPTS = 3
TOKEN_UPDATE_DEBOUNCE_SECONDS = 2
DEFAULT_EXPIRY_BUFFER_MINUTES = 5
IMMINENT_EXPIRY_BUFFER_MINUTES = 2

# {user_ulid: {"last_refresh": Optional[float], "attempts": int, "in_progress": bool, "blocked_until": float}}
_refresh_tracker: dict[str, dict[str, Any]] = {}
# {user_ulid: monotonic time of the last stored update}
_last_token_update: dict[str, float] = {}


class CalTokenError(Exception):
    """Raised when no usable Cal.com access token can be produced"""

    def __init__(self, message: str, code: str = "CAL_TOKEN_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


def reset_token_tracking() -> None:
    """Forget refresh attempts and debounce timestamps"""
    _refresh_tracker.clear()
    _last_token_update.clear()


def is_token_expired(
    expires_at: Union[datetime, str, int, None],
    buffer_minutes: int = DEFAULT_EXPIRY_BUFFER_MINUTES,
    force_check: bool = False,
) -> bool:
    """True when the token is missing, unparseable, or expires within the buffer"""
    if force_check:
        return True
    expiry = parse_datetime(expires_at)
    if expiry is None:
        return True
    return datetime.utcnow() + timedelta(minutes=buffer_minutes) >= expiry


class CalTokenService:
    """Central source of truth for Cal.com token operations"""

    def __init__(self, db: Session, cal_service: Optional[CalService] = None):
        self.db = db
        self.cal = cal_service or CalService()

    def get_integration(self, user_ulid: str) -> Optional[CalendarIntegration]:
        return (
            self.db.query(CalendarIntegration)
            .filter(CalendarIntegration.user_ulid == user_ulid, CalendarIntegration.provider == "CAL")
            .first()
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def update_tokens(
        self,
        user_ulid: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_at: Union[datetime, str, int, None],
        debounce: bool = True,
    ) -> dict[str, Any]:
        """Store a new token pair. Repeated calls for a user within 2s are debounced."""
        if not user_ulid:
            return {"success": False, "error": "User ULID is required"}
        if not access_token or not refresh_token:
            return {"success": False, "error": "Access token and refresh token are required"}

        expiry = parse_datetime(expires_at)
        if expiry is None:
            return {"success": False, "error": "Invalid token expiry"}

        now = time.monotonic()
        last_update = _last_token_update.get(user_ulid)
        if debounce and last_update is not None and now - last_update < TOKEN_UPDATE_DEBOUNCE_SECONDS:
            logger.info(f"[CAL_TOKEN_SERVICE] Token update debounced for user {user_ulid}")
            return {"success": True, "debounced": True}

        integration = self.get_integration(user_ulid)
        if not integration:
            return {"success": False, "error": "Calendar integration not found"}

        integration.cal_access_token = encrypt_token(access_token)
        integration.cal_refresh_token = encrypt_token(refresh_token)
        integration.cal_access_token_expires_at = expiry
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ [CAL_TOKEN_SERVICE] Failed to store tokens for {user_ulid}: {e}")
            return {"success": False, "error": f"Failed to update tokens in database: {e}"}

        _last_token_update[user_ulid] = now
        logger.info(f"✅ [CAL_TOKEN_SERVICE] Tokens stored for user {user_ulid}")
        return {"success": True, "expires_at": to_iso(expiry)}

    def save_managed_user_integration(self, user: User, payload: dict[str, Any]) -> CalendarIntegration:
        """Create or update the user's integration from a managed user creation response"""
        cal_user = payload.get("user") or {}
        integration = self.get_integration(user.ulid)
        if not integration:
            integration = CalendarIntegration(user_ulid=user.ulid, provider="CAL")
            self.db.add(integration)

        integration.cal_managed_user_id = cal_user.get("id")
        integration.cal_username = cal_user.get("username")
        integration.time_zone = cal_user.get("timeZone")
        integration.cal_access_token = encrypt_token(payload.get("accessToken"))
        integration.cal_refresh_token = encrypt_token(payload.get("refreshToken"))
        integration.cal_access_token_expires_at = parse_datetime(payload.get("accessTokenExpiresAt"))
        integration.sync_enabled = True
        integration.last_synced_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(integration)
        return integration

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _acquire_refresh_slot(self, user_ulid: str) -> Optional[str]:
        """Loop protection. Returns an error message when the refresh must not run."""
        now = time.monotonic()
        tracker = _refresh_tracker.setdefault(
            user_ulid, {"last_refresh": None, "attempts": 0, "in_progress": False, "blocked_until": 0.0}
        )

        if tracker["blocked_until"] and now >= tracker["blocked_until"]:
            tracker["attempts"] = 0
            tracker["blocked_until"] = 0.0

        if tracker["in_progress"]:
            return "Token refresh already in progress"

        if tracker["blocked_until"]:
            return "Token refresh loop detected. Please try again later."

        last_refresh = tracker["last_refresh"]
        if last_refresh is not None and now - last_refresh < TOKEN_REFRESH_COOLDOWN_SECONDS:
            tracker["attempts"] += 1
            if tracker["attempts"] >= MAX_REFRESH_ATTEMPTS:
                tracker["blocked_until"] = now + TOKEN_REFRESH_COOLDOWN_SECONDS
                logger.warning(f"⚠️ [CAL_TOKEN_SERVICE] Refresh loop detected for user {user_ulid}")
                return "Token refresh loop detected. Please try again later."
        else:
            tracker["attempts"] = 1

        tracker["last_refresh"] = now
        tracker["in_progress"] = True
        return None

    async def refresh_tokens(self, user_ulid: str, force_refresh: bool = False) -> dict[str, Any]:
        if not user_ulid:
            return {"success": False, "error": "User ULID is required"}

        blocked = self._acquire_refresh_slot(user_ulid)
        if blocked:
            return {"success": False, "error": blocked}

        try:
            return await self._refresh_tokens(user_ulid, force_refresh)
        finally:
            _refresh_tracker[user_ulid]["in_progress"] = False

    async def _refresh_tokens(self, user_ulid: str, force_refresh: bool) -> dict[str, Any]:
        integration = self.get_integration(user_ulid)
        if not integration:
            return {"success": False, "error": "Calendar integration not found"}

        current_refresh_token = decrypt_token(integration.cal_refresh_token)
        if not current_refresh_token:
            return {"success": False, "error": "No refresh token available"}

        if not force_refresh and integration.cal_access_token_expires_at:
            if not is_token_expired(integration.cal_access_token_expires_at):
                return {"success": True, "error": "Token not expired"}

        if not self.cal.client_id or not self.cal.client_secret:
            logger.error("❌ [CAL_TOKEN_SERVICE] CAL_CLIENT_ID / CAL_CLIENT_SECRET not configured")
            return {"success": False, "error": "Missing required environment variables"}

        managed_user_id = integration.cal_managed_user_id
        tokens: Optional[dict[str, Any]] = None
        method = "standard"

        try:
            if managed_user_id and force_refresh:
                method = "force"
                tokens = self._parse_force_refresh(await self.cal.force_refresh_managed_user(managed_user_id))
            else:
                try:
                    tokens = self._parse_standard_refresh(await self.cal.refresh_oauth_token(current_refresh_token))
                except CalApiError as e:
                    if not managed_user_id:
                        raise
                    logger.warning(
                        f"⚠️ [CAL_TOKEN_SERVICE] Standard refresh failed ({e.status_code}), "
                        f"falling back to force refresh for user {user_ulid}"
                    )
                    method = "force_fallback"
                    tokens = self._parse_force_refresh(await self.cal.force_refresh_managed_user(managed_user_id))
        except CalApiError as e:
            prefix = "Standard refresh failed and fallback force refresh also failed" if method == "force_fallback" else "Token refresh failed"
            logger.error(f"❌ [CAL_TOKEN_SERVICE] {prefix} for user {user_ulid}: {e.status_code}")
            return {"success": False, "error": f"{prefix} (status {e.status_code}: {e.message})"}

        if not tokens:
            logger.error(f"❌ [CAL_TOKEN_SERVICE] Invalid token response for user {user_ulid}")
            return {"success": False, "error": "Invalid token response structure after refresh"}

        # Keep the current refresh token when the provider does not rotate it
        refresh_token = tokens["refresh_token"] or current_refresh_token

        stored = self.update_tokens(
            user_ulid, tokens["access_token"], refresh_token, tokens["expires_at"], debounce=False
        )
        if not stored["success"]:
            return {
                "success": False,
                "error": f"Token refresh API succeeded, but failed to save new tokens: {stored['error']}",
            }

        logger.info(f"🔄 [CAL_TOKEN_SERVICE] Tokens refreshed for user {user_ulid} ({method})")
        return {
            "success": True,
            "access_token": tokens["access_token"],
            "expires_at": to_iso(tokens["expires_at"]),
            "method": method,
        }

    @staticmethod
    def _parse_force_refresh(data: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not data or not data.get("accessToken"):
            return None
        expires_at = parse_datetime(data.get("accessTokenExpiresAt"))
        if expires_at is None:
            return None
        return {
            "access_token": data["accessToken"],
            "refresh_token": data.get("refreshToken"),
            "expires_at": expires_at,
        }

    @staticmethod
    def _parse_standard_refresh(data: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not data or not data.get("access_token"):
            return None
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            return None
        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token"),
            "expires_at": datetime.utcnow() + timedelta(seconds=expires_in),
        }

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    async def ensure_valid_token(
        self, user_ulid: str, force_refresh: bool = False, api_reported: bool = False
    ) -> dict[str, Any]:
        """Return {"success", "access_token"} refreshing first when needed"""
        if not user_ulid:
            return {"success": False, "access_token": "", "error": "User ULID is required"}

        integration = self.get_integration(user_ulid)
        if not integration:
            return {"success": False, "access_token": "", "error": "Calendar integration not found"}
        if not integration.cal_access_token:
            return {"success": False, "access_token": "", "error": "No access token available"}

        needs_refresh = force_refresh or api_reported or is_token_expired(integration.cal_access_token_expires_at)
        if not needs_refresh:
            return {"success": True, "access_token": decrypt_token(integration.cal_access_token)}

        reason = "API reported invalid token" if api_reported else "Forced refresh" if force_refresh else "Token expired"
        logger.info(f"🔄 [CAL_TOKEN_SERVICE] Refreshing token for user {user_ulid}: {reason}")

        result = await self.refresh_tokens(user_ulid, force_refresh or api_reported)
        if not result["success"]:
            return {"success": False, "access_token": "", "error": result.get("error") or "Failed to refresh token"}

        self.db.refresh(integration)
        access_token = decrypt_token(integration.cal_access_token)
        if not access_token:
            return {"success": False, "access_token": "", "error": "Failed to retrieve updated token"}
        return {"success": True, "access_token": access_token}

    def get_token_info(self, user_ulid: str) -> dict[str, Any]:
        integration = self.get_integration(user_ulid)
        if not integration:
            return {"connected": False}
        expires_at = integration.cal_access_token_expires_at
        return {
            "connected": True,
            "managed_user_id": integration.cal_managed_user_id,
            "expires_at": to_iso(expires_at),
            "is_expired": is_token_expired(expires_at),
            "is_expiring_imminent": is_token_expired(expires_at, IMMINENT_EXPIRY_BUFFER_MINUTES),
            "has_refresh_token": bool(integration.cal_refresh_token),
        }

    async def get_access_token(self, user_ulid: str, force_refresh: bool = False, api_reported: bool = False) -> str:
        """ensure_valid_token that raises CalTokenError instead of returning a failure"""
        result = await self.ensure_valid_token(user_ulid, force_refresh, api_reported)
        if not result["success"]:
            code = "CAL_TOKEN_REFRESH_ERROR" if (force_refresh or api_reported) else "CAL_TOKEN_ERROR"
            raise CalTokenError(result.get("error") or "Failed to get valid token", code)
        return result["access_token"]

    async def call_with_token_refresh(
        self, user_ulid: str, fn: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run fn(access_token); on an expired-token answer refresh once and retry"""
        access_token = await self.get_access_token(user_ulid)
        try:
            return await fn(access_token)
        except CalApiError as e:
            if not is_token_expired_error(e):
                raise
            logger.warning(
                f"⚠️ [CAL_TOKEN_SERVICE] Cal.com rejected token for user {user_ulid} "
                f"({e.status_code}), refreshing and retrying"
            )

        access_token = await self.get_access_token(user_ulid, force_refresh=True, api_reported=True)
        return await fn(access_token)
