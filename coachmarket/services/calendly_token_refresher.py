"""Scheduled refresh of Calendly OAuth tokens close to expiry"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models import CalendlyIntegration
from ..token_crypto import decrypt_token, encrypt_token
from .calendly_service import CalendlyService
from .resilience import CircuitBreaker, RetryManager

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(hours=1)
DEFAULT_TOKEN_LIFETIME_SECONDS = 7200

# Shared by every cron invocation in this process
circuit_breaker = CircuitBreaker(failure_threshold=3, reset_timeout=60 * 60)
retry_manager = RetryManager(max_retries=3, base_delay=1.0, max_delay=10.0)


class CalendlyTokenRefresher:
    def __init__(
        self,
        db: Session,
        calendly_service: Optional[CalendlyService] = None,
        breaker: Optional[CircuitBreaker] = None,
        retries: Optional[RetryManager] = None,
    ):
        self.db = db
        self.calendly = calendly_service or CalendlyService()
        self.breaker = breaker or circuit_breaker
        self.retries = retries or retry_manager

    def find_expiring(self) -> list[CalendlyIntegration]:
        """Active integrations whose token expires within the next hour, soonest first"""
        cutoff = datetime.utcnow() + REFRESH_WINDOW
        return (
            self.db.query(CalendlyIntegration)
            .filter(CalendlyIntegration.status == "active", CalendlyIntegration.expires_at < cutoff)
            .order_by(CalendlyIntegration.expires_at.asc())
            .all()
        )

    def store_tokens(self, integration: CalendlyIntegration, token_data: dict[str, Any]) -> None:
        integration.access_token = encrypt_token(token_data["access_token"])
        integration.refresh_token = encrypt_token(
            token_data.get("refresh_token") or decrypt_token(integration.refresh_token)
        )
        integration.expires_at = datetime.utcnow() + timedelta(
            seconds=token_data.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS)
        )
        integration.failed_refresh_count = 0
        integration.last_sync_at = datetime.utcnow()
        self.db.commit()

    async def refresh_integration(self, integration: CalendlyIntegration) -> None:
        """Refresh one integration, retrying with backoff. Raises the last error."""
        attempt = 0
        while True:
            try:
                token_data = await self.calendly.refresh_access_token(decrypt_token(integration.refresh_token))
                self.store_tokens(integration, token_data)
                return
            except Exception as e:
                self.db.rollback()
                attempt += 1
                if not self.retries.should_retry(e, attempt):
                    raise
                delay = self.retries.get_backoff_time(attempt)
                logger.warning(
                    f"⚠️ [CALENDLY_REFRESH] Attempt {attempt} failed for {integration.ulid}, retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

    async def refresh_expiring_tokens(self) -> Optional[dict[str, Any]]:
        """Returns {success, failed, errors}, or None when nothing is due"""
        integrations = self.find_expiring()
        if not integrations:
            return None

        results: dict[str, Any] = {"success": 0, "failed": 0, "errors": []}

        for integration in integrations:
            if self.breaker.is_open():
                logger.warning("⚠️ [CALENDLY_REFRESH] Circuit breaker is open, skipping remaining refreshes")
                break

            try:
                await self.refresh_integration(integration)
            except Exception as e:
                logger.error(f"❌ [CALENDLY_REFRESH] Failed to refresh token for {integration.ulid}: {e}")
                results["failed"] += 1
                results["errors"].append(f"Failed to refresh token for integration {integration.ulid}: {e}")
                self.breaker.record_failure()
                integration.status = "error"
                integration.failed_refresh_count = (integration.failed_refresh_count or 0) + 1
                self.db.commit()
                continue

            results["success"] += 1
            self.breaker.record_success()

        logger.info(
            f"🔄 [CALENDLY_REFRESH] Completed: {results['success']} refreshed, {results['failed']} failed"
        )
        return results
