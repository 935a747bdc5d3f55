import logging
from typing import Any, Optional

import httpx

from ..config import CAL_API_BASE_URL, CAL_API_VERSION, CAL_CLIENT_ID, CAL_CLIENT_SECRET, CAL_WEBHOOK_SECRET

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TRIGGERS = ["BOOKING_CREATED", "BOOKING_RESCHEDULED", "BOOKING_CANCELLED"]

# Cal.com answers 498 when a managed user's access token has expired
TOKEN_EXPIRED_STATUSES = {401, 498}


class CalApiError(Exception):
    """Raised when Cal.com answers with a non-success status"""

    def __init__(self, status_code: int, message: str, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.body = body


def is_token_expired_response(status_code: int, body: Any = None) -> bool:
    """True when Cal.com rejected the call because the access token expired"""
    if status_code in TOKEN_EXPIRED_STATUSES:
        return True
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("code") == "TokenExpiredException":
            return True
    return False


def is_token_expired_error(error: BaseException) -> bool:
    return isinstance(error, CalApiError) and is_token_expired_response(error.status_code, error.body)


class CalService:
    """Service for interacting with the Cal.com v2 platform API"""

    def __init__(self):
        self.base_url = CAL_API_BASE_URL.rstrip("/")
        self.client_id = CAL_CLIENT_ID
        self.client_secret = CAL_CLIENT_SECRET

    def _bearer_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "cal-api-version": CAL_API_VERSION,
        }

    def _client_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-cal-client-id": self.client_id or "",
            "x-cal-secret-key": self.client_secret or "",
        }

    async def _request(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        json: Optional[dict] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.request(method, url, headers=headers, json=json)

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            if not message and isinstance(body, dict) and isinstance(body.get("error"), dict):
                message = body["error"].get("message")
            logger.error(f"❌ Cal.com {method} {path} failed: {response.status_code} {message}")
            raise CalApiError(response.status_code, message or f"Cal.com API error: {response.status_code}", body)

        return body

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def refresh_oauth_token(self, refresh_token: str) -> dict[str, Any]:
        """Standard OAuth refresh. Returns access_token, refresh_token, expires_in."""
        return await self._request(
            "POST",
            "/oauth/token",
            headers={"Content-Type": "application/json"},
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

    async def force_refresh_managed_user(self, managed_user_id: int) -> dict[str, Any]:
        """Force-refresh a managed user's tokens with the platform client credentials"""
        body = await self._request(
            "POST",
            f"/oauth-clients/{self.client_id}/users/{managed_user_id}/force-refresh",
            headers=self._client_headers(),
        )
        return body.get("data") or {}

    async def create_managed_user(self, email: str, name: str, time_zone: str) -> dict[str, Any]:
        """Create a platform managed user. Returns user, accessToken, refreshToken, accessTokenExpiresAt."""
        body = await self._request(
            "POST",
            f"/oauth-clients/{self.client_id}/users",
            headers=self._client_headers(),
            json={"email": email, "name": name, "timeZone": time_zone},
        )
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def reschedule_booking(
        self,
        access_token: str,
        booking_uid: str,
        start: str,
        rescheduled_by: Optional[str],
        reason: str,
    ) -> dict[str, Any]:
        payload = {"start": start, "reschedulingReason": reason}
        if rescheduled_by:
            payload["rescheduledBy"] = rescheduled_by
        return await self._request(
            "POST",
            f"/bookings/{booking_uid}/reschedule",
            headers=self._bearer_headers(access_token),
            json=payload,
        )

    async def cancel_booking(self, access_token: str, booking_uid: str, reason: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/bookings/{booking_uid}/cancel",
            headers=self._bearer_headers(access_token),
            json={"cancellationReason": reason},
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def list_webhooks(self, access_token: str) -> list[dict[str, Any]]:
        body = await self._request("GET", "/webhooks", headers=self._bearer_headers(access_token))
        return body.get("data") or []

    async def register_webhook(
        self, access_token: str, subscriber_url: str, triggers: Optional[list[str]] = None
    ) -> dict[str, Any]:
        payload = {
            "subscriberUrl": subscriber_url,
            "triggers": triggers or DEFAULT_WEBHOOK_TRIGGERS,
            "active": True,
        }
        if CAL_WEBHOOK_SECRET:
            payload["secret"] = CAL_WEBHOOK_SECRET
        body = await self._request(
            "POST", "/webhooks", headers=self._bearer_headers(access_token), json=payload
        )
        return body.get("data") or {}

    async def delete_webhook(self, access_token: str, webhook_id: str) -> None:
        await self._request("DELETE", f"/webhooks/{webhook_id}", headers=self._bearer_headers(access_token))

    async def ensure_webhook_exists(
        self, access_token: str, subscriber_url: str, triggers: Optional[list[str]] = None
    ) -> dict[str, Any]:
        """Reuse an active webhook covering every trigger, otherwise replace it"""
        triggers = triggers or DEFAULT_WEBHOOK_TRIGGERS
        for webhook in await self.list_webhooks(access_token):
            if webhook.get("subscriberUrl") != subscriber_url:
                continue
            existing_triggers = set(webhook.get("triggers") or [])
            if webhook.get("active", True) and set(triggers) <= existing_triggers:
                logger.info(f"✅ Cal.com webhook {webhook.get('id')} already registered")
                return webhook
            logger.info(f"🔄 Replacing outdated Cal.com webhook {webhook.get('id')}")
            await self.delete_webhook(access_token, str(webhook.get("id")))
        return await self.register_webhook(access_token, subscriber_url, triggers)
