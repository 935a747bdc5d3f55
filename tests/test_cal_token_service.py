import asyncio
import time
from datetime import datetime, timedelta

import pytest

from coachmarket.services.cal_service import CalApiError
from coachmarket.services.cal_token_service import (
    CalTokenError,
    CalTokenService,
    is_token_expired,
)
from coachmarket.token_crypto import decrypt_token


def _force_refresh_payload(access_token="forced-access", refresh_token="forced-refresh"):
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "accessTokenExpiresAt": int((time.time() + 3600) * 1000),
    }


@pytest.fixture
def tokens(db, cal_api):
    return CalTokenService(db, cal_api)


class TestIsTokenExpired:
    def test_missing_expiry_counts_as_expired(self):
        assert is_token_expired(None)
        assert is_token_expired("not a date")

    def test_buffer(self):
        assert not is_token_expired(datetime.utcnow() + timedelta(minutes=10))
        assert is_token_expired(datetime.utcnow() + timedelta(minutes=3))
        assert not is_token_expired(datetime.utcnow() + timedelta(minutes=3), buffer_minutes=2)

    def test_force_check(self):
        assert is_token_expired(datetime.utcnow() + timedelta(days=1), force_check=True)


class TestUpdateTokens:
    def test_stores_encrypted_tokens(self, db, tokens, coach, make_integration):
        integration = make_integration(coach)
        expires_at = datetime.utcnow() + timedelta(hours=2)

        result = tokens.update_tokens(coach.ulid, "new-access", "new-refresh", expires_at)

        assert result["success"] is True
        db.refresh(integration)
        assert integration.cal_access_token != "new-access"
        assert decrypt_token(integration.cal_access_token) == "new-access"
        assert decrypt_token(integration.cal_refresh_token) == "new-refresh"

    def test_repeated_updates_are_debounced(self, db, tokens, coach, make_integration):
        integration = make_integration(coach)
        expires_at = datetime.utcnow() + timedelta(hours=2)

        tokens.update_tokens(coach.ulid, "first", "first-refresh", expires_at)
        second = tokens.update_tokens(coach.ulid, "second", "second-refresh", expires_at)

        assert second == {"success": True, "debounced": True}
        db.refresh(integration)
        assert decrypt_token(integration.cal_access_token) == "first"

    def test_debounce_is_per_user(self, tokens, make_user, make_integration):
        first, second = make_user(), make_user()
        make_integration(first)
        make_integration(second)
        expires_at = datetime.utcnow() + timedelta(hours=2)

        tokens.update_tokens(first.ulid, "a", "b", expires_at)
        result = tokens.update_tokens(second.ulid, "c", "d", expires_at)

        assert "debounced" not in result

    def test_requires_both_tokens(self, tokens, coach, make_integration):
        make_integration(coach)
        result = tokens.update_tokens(coach.ulid, "access", None, datetime.utcnow())
        assert result["success"] is False


class TestRefreshTokens:
    async def test_valid_token_is_not_refreshed(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, expires_in=timedelta(hours=1))

        result = await tokens.refresh_tokens(coach.ulid)

        assert result == {"success": True, "error": "Token not expired"}
        cal_api.refresh_oauth_token.assert_not_awaited()

    async def test_standard_refresh(self, db, tokens, cal_api, coach, make_integration):
        integration = make_integration(coach, expires_in=timedelta(minutes=1))
        cal_api.refresh_oauth_token.return_value = {
            "access_token": "refreshed-access",
            "refresh_token": "refreshed-refresh",
            "expires_in": 1800,
        }

        result = await tokens.refresh_tokens(coach.ulid)

        assert result["success"] is True
        assert result["method"] == "standard"
        assert result["access_token"] == "refreshed-access"
        cal_api.refresh_oauth_token.assert_awaited_once_with("refresh-token")
        db.refresh(integration)
        assert decrypt_token(integration.cal_access_token) == "refreshed-access"
        assert decrypt_token(integration.cal_refresh_token) == "refreshed-refresh"

    async def test_keeps_refresh_token_when_not_rotated(self, db, tokens, cal_api, coach, make_integration):
        integration = make_integration(coach, expires_in=timedelta(minutes=1))
        cal_api.refresh_oauth_token.return_value = {"access_token": "only-access", "expires_in": 1800}

        result = await tokens.refresh_tokens(coach.ulid)

        assert result["success"] is True
        db.refresh(integration)
        assert decrypt_token(integration.cal_refresh_token) == "refresh-token"

    async def test_managed_user_falls_back_to_force_refresh(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, managed_user_id=77, expires_in=timedelta(minutes=1))
        cal_api.refresh_oauth_token.side_effect = CalApiError(400, "invalid_grant")
        cal_api.force_refresh_managed_user.return_value = _force_refresh_payload()

        result = await tokens.refresh_tokens(coach.ulid)

        assert result["success"] is True
        assert result["method"] == "force_fallback"
        cal_api.force_refresh_managed_user.assert_awaited_once_with(77)

    async def test_forced_refresh_uses_force_endpoint(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, managed_user_id=77)
        cal_api.force_refresh_managed_user.return_value = _force_refresh_payload()

        result = await tokens.refresh_tokens(coach.ulid, force_refresh=True)

        assert result["method"] == "force"
        cal_api.refresh_oauth_token.assert_not_awaited()

    async def test_failure_without_managed_user(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, managed_user_id=None, expires_in=timedelta(minutes=1))
        cal_api.refresh_oauth_token.side_effect = CalApiError(400, "invalid_grant")

        result = await tokens.refresh_tokens(coach.ulid)

        assert result["success"] is False
        assert "Token refresh failed" in result["error"]
        cal_api.force_refresh_managed_user.assert_not_awaited()

    async def test_invalid_response_shape(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, expires_in=timedelta(minutes=1))
        cal_api.refresh_oauth_token.return_value = {"unexpected": True}

        result = await tokens.refresh_tokens(coach.ulid)

        assert result == {"success": False, "error": "Invalid token response structure after refresh"}

    async def test_missing_integration(self, tokens, coach):
        result = await tokens.refresh_tokens(coach.ulid)
        assert result == {"success": False, "error": "Calendar integration not found"}

    async def test_missing_refresh_token(self, tokens, coach, make_integration):
        make_integration(coach, refresh_token=None)
        result = await tokens.refresh_tokens(coach.ulid, force_refresh=True)
        assert result == {"success": False, "error": "No refresh token available"}

    async def test_missing_client_credentials(self, tokens, cal_api, coach, make_integration):
        make_integration(coach)
        cal_api.client_secret = None

        result = await tokens.refresh_tokens(coach.ulid, force_refresh=True)

        assert result == {"success": False, "error": "Missing required environment variables"}

    async def test_third_refresh_within_cooldown_is_blocked(self, tokens, cal_api, coach, make_integration):
        make_integration(coach)
        cal_api.force_refresh_managed_user.return_value = _force_refresh_payload()

        first = await tokens.refresh_tokens(coach.ulid, force_refresh=True)
        second = await tokens.refresh_tokens(coach.ulid, force_refresh=True)
        third = await tokens.refresh_tokens(coach.ulid, force_refresh=True)

        assert first["success"] and second["success"]
        assert third == {
            "success": False,
            "error": "Token refresh loop detected. Please try again later.",
        }
        assert cal_api.force_refresh_managed_user.await_count == 2

    async def test_concurrent_refresh_is_rejected(self, tokens, cal_api, coach, make_integration):
        make_integration(coach)
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_force_refresh(managed_user_id):
            started.set()
            await release.wait()
            return _force_refresh_payload()

        cal_api.force_refresh_managed_user.side_effect = slow_force_refresh
        first = asyncio.create_task(tokens.refresh_tokens(coach.ulid, force_refresh=True))
        await started.wait()

        second = await tokens.refresh_tokens(coach.ulid, force_refresh=True)
        release.set()
        first_result = await first

        assert second == {"success": False, "error": "Token refresh already in progress"}
        assert first_result["success"] is True
        assert cal_api.force_refresh_managed_user.await_count == 1
        # The slot is released once the first refresh finishes
        third = await tokens.refresh_tokens(coach.ulid, force_refresh=True)
        assert third["success"] is True

    async def test_refresh_writes_bypass_the_debounce(self, db, tokens, cal_api, coach, make_integration):
        integration = make_integration(coach)
        tokens.update_tokens(
            coach.ulid, "manual-access", "manual-refresh", datetime.utcnow() + timedelta(minutes=1)
        )
        cal_api.refresh_oauth_token.return_value = {
            "access_token": "rotated-access",
            "refresh_token": "rotated-refresh",
            "expires_in": 1800,
        }

        result = await tokens.refresh_tokens(coach.ulid)

        assert result["success"] is True
        cal_api.refresh_oauth_token.assert_awaited_once_with("manual-refresh")
        db.refresh(integration)
        assert decrypt_token(integration.cal_access_token) == "rotated-access"
        assert decrypt_token(integration.cal_refresh_token) == "rotated-refresh"


class TestTokenAccess:
    async def test_ensure_valid_token_returns_stored_token(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, access_token="stored-access")

        result = await tokens.ensure_valid_token(coach.ulid)

        assert result == {"success": True, "access_token": "stored-access"}
        cal_api.refresh_oauth_token.assert_not_awaited()

    async def test_ensure_valid_token_refreshes_expired(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, expires_in=timedelta(minutes=-5))
        cal_api.refresh_oauth_token.return_value = {
            "access_token": "fresh-access",
            "refresh_token": "fresh-refresh",
            "expires_in": 3600,
        }

        result = await tokens.ensure_valid_token(coach.ulid)

        assert result == {"success": True, "access_token": "fresh-access"}

    async def test_get_access_token_raises_without_integration(self, tokens, coach):
        with pytest.raises(CalTokenError) as exc_info:
            await tokens.get_access_token(coach.ulid)
        assert exc_info.value.code == "CAL_TOKEN_ERROR"

    def test_token_info(self, tokens, coach, make_integration):
        assert tokens.get_token_info(coach.ulid) == {"connected": False}

        make_integration(coach, managed_user_id=55, expires_in=timedelta(minutes=4))
        info = tokens.get_token_info(coach.ulid)

        assert info["connected"] is True
        assert info["managed_user_id"] == 55
        assert info["is_expired"] is True
        assert info["is_expiring_imminent"] is False
        assert info["has_refresh_token"] is True
        assert info["expires_at"].endswith("Z")

    async def test_call_with_token_refresh_retries_once(self, tokens, cal_api, coach, make_integration):
        make_integration(coach, access_token="stale-access")
        cal_api.force_refresh_managed_user.return_value = _force_refresh_payload("retried-access")
        seen = []

        async def call(token):
            seen.append(token)
            if len(seen) == 1:
                raise CalApiError(498, "Token expired")
            return "done"

        assert await tokens.call_with_token_refresh(coach.ulid, call) == "done"
        assert seen == ["stale-access", "retried-access"]

    async def test_call_with_token_refresh_propagates_other_errors(self, tokens, coach, make_integration):
        make_integration(coach)

        async def call(token):
            raise CalApiError(404, "Booking not found")

        with pytest.raises(CalApiError):
            await tokens.call_with_token_refresh(coach.ulid, call)
