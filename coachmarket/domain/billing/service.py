"""Billing service - subscription plans, Stripe webhooks, dispute evidence and refunds"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from ...models import CoachingSession, Dispute, SessionStatus, SubscriptionPlan, SystemRole, User
from ...shared.responses import ApiError
from .schemas import DisputeEvidence, RefundRequest

logger = logging.getLogger(__name__)

DISPUTE_CREATED = "charge.dispute.created"
DISPUTE_UPDATED = "charge.dispute.updated"
DISPUTE_CLOSED = "charge.dispute.closed"

REFUNDED = "refunded"

ADMIN_ROLES = (SystemRole.SYSTEM_OWNER, SystemRole.SYSTEM_MODERATOR)


def _metadata_value(obj: Any, key: str) -> Optional[str]:
    metadata = getattr(obj, "metadata", None)
    if metadata is None and isinstance(obj, dict):
        metadata = obj.get("metadata")
    if not metadata:
        return None
    try:
        return metadata[key]
    except (KeyError, TypeError):
        return None


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class BillingService:
    def __init__(self, db: Session):
        self.db = db
        stripe.api_key = STRIPE_SECRET_KEY

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def list_plans(self) -> list[SubscriptionPlan]:
        return (
            self.db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.amount.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Verify the Stripe signature and return the event as a plain dict"""
        if not STRIPE_WEBHOOK_SECRET:
            logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
            raise ApiError(500, "CONFIG_ERROR", "Stripe webhook secret not configured")
        if not sig_header:
            raise ApiError(400, "INVALID_SIGNATURE", "Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"⚠️ Stripe webhook verification failed: {e}")
            raise ApiError(400, "INVALID_SIGNATURE", "Invalid Stripe webhook signature") from e

        return json.loads(payload)

    def handle_event(self, event: dict) -> dict:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(f"📥 Stripe webhook: {event_type} ({event.get('id')})")

        if event_type == DISPUTE_CREATED:
            dispute = self.record_dispute(obj)
            return {"event_type": event_type, "handled": True, "dispute_ulid": dispute.ulid}
        if event_type in (DISPUTE_UPDATED, DISPUTE_CLOSED):
            handled = self.update_dispute_status(obj)
            return {"event_type": event_type, "handled": handled}

        logger.info(f"ℹ️ Ignoring Stripe event {event_type}")
        return {"event_type": event_type, "handled": False}

    def record_dispute(self, obj: dict) -> Dispute:
        dispute_id = obj.get("id")
        payment_intent_id = obj.get("payment_intent")
        if not dispute_id or not payment_intent_id:
            raise ApiError(400, "INVALID_PAYLOAD", "Dispute is missing id or payment_intent")

        existing = self.db.query(Dispute).filter(Dispute.stripe_dispute_id == dispute_id).first()
        if existing:
            logger.info(f"ℹ️ Dispute {dispute_id} already recorded")
            return existing

        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            logger.error(f"❌ Failed to retrieve payment intent {payment_intent_id}: {e}")
            raise ApiError(502, "STRIPE_ERROR", "Failed to retrieve payment intent") from e

        session_ulid = _metadata_value(payment_intent, "sessionId")
        if not session_ulid:
            logger.error(f"❌ Payment intent {payment_intent_id} has no sessionId metadata")
            raise ApiError(
                400, "VALIDATION_ERROR", "Session ID not found in payment intent metadata"
            )

        session = self.db.query(CoachingSession).filter(CoachingSession.ulid == session_ulid).first()
        if not session:
            # session_ulid is a foreign key, so an unknown session stays unlinked
            logger.warning(f"⚠️ Disputed session {session_ulid} not found, recording dispute {dispute_id} unlinked")

        evidence_details = obj.get("evidence_details") or {}
        dispute = Dispute(
            stripe_dispute_id=dispute_id,
            stripe_payment_intent_id=payment_intent_id,
            session_ulid=session.ulid if session else None,
            amount=obj.get("amount") or 0,
            currency=obj.get("currency") or "usd",
            status=obj.get("status") or "needs_response",
            reason=obj.get("reason"),
            evidence_due_by=_from_epoch(evidence_details.get("due_by")) or datetime.utcnow(),
            evidence={},
        )
        try:
            self.db.add(dispute)
            if session:
                session.status = SessionStatus.DISPUTED
            self.db.commit()
            self.db.refresh(dispute)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to save dispute {dispute_id}: {e}")
            raise ApiError(500, "DB_ERROR", "Failed to save dispute") from e

        logger.info(f"✅ Dispute {dispute_id} recorded for session {dispute.session_ulid}")
        return dispute

    def update_dispute_status(self, obj: dict) -> bool:
        dispute = (
            self.db.query(Dispute).filter(Dispute.stripe_dispute_id == obj.get("id")).first()
        )
        if not dispute:
            logger.warning(f"⚠️ Status update for unknown dispute {obj.get('id')}")
            return False
        dispute.status = obj.get("status") or dispute.status
        self.db.commit()
        logger.info(f"✅ Dispute {dispute.stripe_dispute_id} is now {dispute.status}")
        return True

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def list_disputes(self, user: User, session_ulid: Optional[str] = None) -> list[Dispute]:
        query = self.db.query(Dispute)
        if user.system_role not in ADMIN_ROLES:
            query = query.join(CoachingSession, Dispute.session_ulid == CoachingSession.ulid).filter(
                (CoachingSession.coach_ulid == user.ulid)
                | (CoachingSession.mentee_ulid == user.ulid)
            )
        if session_ulid:
            query = query.filter(Dispute.session_ulid == session_ulid)
        return query.order_by(Dispute.created_at.desc()).all()

    def submit_evidence(self, dispute_ulid: str, evidence: DisputeEvidence, user: User) -> Dispute:
        dispute = self.db.query(Dispute).filter(Dispute.ulid == dispute_ulid).first()
        if not dispute:
            raise ApiError(404, "NOT_FOUND", "Dispute not found")

        session = None
        if dispute.session_ulid:
            session = (
                self.db.query(CoachingSession)
                .filter(CoachingSession.ulid == dispute.session_ulid)
                .first()
            )
        is_coach = session is not None and session.coach_ulid == user.ulid
        if not is_coach and user.system_role != SystemRole.SYSTEM_OWNER:
            raise ApiError(403, "FORBIDDEN", "Only the coach can submit dispute evidence")

        stripe_evidence = evidence.to_stripe()
        if not stripe_evidence:
            raise ApiError(400, "VALIDATION_ERROR", "At least one evidence field is required")

        try:
            updated = stripe.Dispute.modify(dispute.stripe_dispute_id, evidence=stripe_evidence)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe rejected evidence for {dispute.stripe_dispute_id}: {e}")
            raise ApiError(400, "STRIPE_ERROR", str(e) or "Failed to submit evidence") from e

        dispute.evidence = evidence.model_dump(exclude_none=True)
        # Statuses are stored in Stripe's vocabulary
        dispute.status = getattr(updated, "status", None) or dispute.status
        self.db.commit()
        self.db.refresh(dispute)
        logger.info(f"✅ Evidence submitted for dispute {dispute.stripe_dispute_id}")
        return dispute

    def refund_dispute(self, dispute_ulid: str, data: RefundRequest, user: User) -> Dispute:
        """Refund the disputed payment and mark the session REFUNDED"""
        dispute = self.db.query(Dispute).filter(Dispute.ulid == dispute_ulid).first()
        if not dispute:
            raise ApiError(404, "NOT_FOUND", "Dispute not found")
        if dispute.status == REFUNDED:
            raise ApiError(400, "ALREADY_REFUNDED", "Dispute has already been refunded")
        if not dispute.stripe_payment_intent_id:
            raise ApiError(400, "VALIDATION_ERROR", "Dispute has no payment intent to refund")

        amount = data.amount or dispute.amount
        if amount > dispute.amount:
            raise ApiError(400, "VALIDATION_ERROR", "Refund cannot exceed the disputed amount")

        try:
            refund = stripe.Refund.create(
                payment_intent=dispute.stripe_payment_intent_id,
                amount=amount,
                reason="requested_by_customer",
            )
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe refund failed for dispute {dispute.stripe_dispute_id}: {e}")
            raise ApiError(400, "STRIPE_ERROR", str(e) or "Failed to process refund") from e

        dispute.status = REFUNDED
        dispute.stripe_refund_id = getattr(refund, "id", None)
        if dispute.session_ulid:
            session = (
                self.db.query(CoachingSession)
                .filter(CoachingSession.ulid == dispute.session_ulid)
                .first()
            )
            if session:
                session.status = SessionStatus.REFUNDED
        self.db.commit()
        self.db.refresh(dispute)
        logger.info(f"💸 {user.email} refunded {amount} on dispute {dispute.stripe_dispute_id}")
        return dispute
