import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..config import CALENDLY_CLIENT_ID, CALENDLY_CLIENT_SECRET, CALENDLY_REDIRECT_URI

logger = logging.getLogger(__name__)


class CalendlyService:
    """Service for interacting with Calendly API"""

    BASE_URL = "https://api.calendly.com"
    AUTH_URL = "https://auth.calendly.com/oauth/authorize"
    TOKEN_URL = "https://auth.calendly.com/oauth/token"  # noqa: S105 - OAuth endpoint URL

    def __init__(self):
        self.client_id = CALENDLY_CLIENT_ID
        self.client_secret = CALENDLY_CLIENT_SECRET
        self.redirect_uri = CALENDLY_REDIRECT_URI

    def get_authorization_url(self, state: str) -> str:
        """Generate OAuth authorization URL"""
        if not self.client_id or not self.redirect_uri:
            logger.error("CALENDLY_CLIENT_ID / CALENDLY_REDIRECT_URI not configured")
            raise ValueError("Calendly OAuth not configured")

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str) -> dict[str, Any]:
        """Exchange authorization code for access token"""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Calendly token exchange failed: {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Refresh expired access token"""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        response.raise_for_status()
        return response.json()

    async def get_user_info(self, access_token: str) -> dict[str, Any]:
        """Get current user information"""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(
                f"{self.BASE_URL}/users/me", headers={"Authorization": f"Bearer {access_token}"}
            )
        response.raise_for_status()
        return response.json()

    async def list_event_types(self, access_token: str, user_uri: str) -> dict[str, Any]:
        """List user's event types"""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(
                f"{self.BASE_URL}/event_types",
                headers={"Authorization": f"Bearer {access_token}"},
                params={"user": user_uri},
            )
        response.raise_for_status()
        return response.json()

    async def create_scheduling_link(
        self, access_token: str, event_type_uri: str, max_event_count: int = 1
    ) -> dict[str, Any]:
        """Create a scheduling link for an event type, single use by default"""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{self.BASE_URL}/scheduling_links",
                headers={"Authorization": f"Bearer {access_token}"},
                json={
                    "max_event_count": max_event_count,
                    "owner": event_type_uri,
                    "owner_type": "EventType",
                },
            )
        if response.status_code not in (200, 201):
            logger.error(f"❌ Calendly scheduling link creation failed: {response.status_code}")
        response.raise_for_status()
        return response.json()
