import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import stripe
from sqlalchemy import text

from coachmarket.config import STRIPE_WEBHOOK_SECRET
from coachmarket.models import CoachingSession, Dispute, SessionStatus, SubscriptionPlan, SystemRole


def _stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _post_event(client, event_type, obj, signature=None):
    payload = json.dumps(
        {"id": "evt_test", "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode()
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": signature or _stripe_signature(payload),
    }
    return client.post("/stripe/webhook", content=payload, headers=headers)


def _dispute_object(dispute_id="dp_test_1", status="needs_response", due_by=None):
    return {
        "id": dispute_id,
        "object": "dispute",
        "amount": 15000,
        "currency": "usd",
        "payment_intent": "pi_disputed",
        "reason": "product_not_received",
        "status": status,
        "evidence_details": {"due_by": due_by or int(time.time()) + 7 * 86400},
    }


@pytest.fixture
def session(coach, mentee, make_session):
    return make_session(coach, mentee, start_in=timedelta(days=-2))


@pytest.fixture
def payment_intents(monkeypatch, session):
    calls = []

    def fake_retrieve(payment_intent_id, **kwargs):
        calls.append(payment_intent_id)
        return SimpleNamespace(id=payment_intent_id, metadata={"sessionId": session.ulid})

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    return calls


@pytest.fixture
def recorded_dispute(client, db, payment_intents):
    _post_event(client, "charge.dispute.created", _dispute_object())
    return db.query(Dispute).one()


class TestStripeWebhook:
    def test_dispute_created(self, client, db, session, payment_intents):
        due_by = int(time.time()) + 86400

        resp = _post_event(client, "charge.dispute.created", _dispute_object(due_by=due_by))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["handled"] is True
        assert payment_intents == ["pi_disputed"]
        dispute = db.query(Dispute).one()
        assert dispute.ulid == data["dispute_ulid"]
        assert dispute.session_ulid == session.ulid
        assert dispute.amount == 15000
        assert dispute.evidence == {}
        assert dispute.evidence_due_by == datetime.fromtimestamp(due_by, tz=timezone.utc).replace(tzinfo=None)
        db.refresh(session)
        assert session.status == SessionStatus.DISPUTED

    def test_duplicate_delivery_is_idempotent(self, client, db, payment_intents):
        _post_event(client, "charge.dispute.created", _dispute_object())
        resp = _post_event(client, "charge.dispute.created", _dispute_object())

        assert resp.status_code == 200
        assert db.query(Dispute).count() == 1
        assert len(payment_intents) == 1

    def test_missing_session_metadata(self, client, db, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "retrieve", lambda pid, **kw: SimpleNamespace(id=pid, metadata={})
        )

        resp = _post_event(client, "charge.dispute.created", _dispute_object())

        assert resp.status_code == 400
        assert resp.json()["error"] == {
            "code": "VALIDATION_ERROR",
            "message": "Session ID not found in payment intent metadata",
        }
        assert db.query(Dispute).count() == 0

    def test_unknown_session_is_recorded_unlinked(self, client, db, monkeypatch):
        db.execute(text("PRAGMA foreign_keys=ON"))
        db.commit()
        monkeypatch.setattr(
            stripe.PaymentIntent,
            "retrieve",
            lambda pid, **kw: SimpleNamespace(id=pid, metadata={"sessionId": "01HZZZZZZZZZZZZZZZZZZZZZZZ"}),
        )

        try:
            resp = _post_event(client, "charge.dispute.created", _dispute_object())

            assert resp.status_code == 200
            assert resp.json()["data"]["handled"] is True
            dispute = db.query(Dispute).one()
            assert dispute.session_ulid is None
            assert dispute.stripe_payment_intent_id == "pi_disputed"
        finally:
            db.rollback()
            db.execute(text("PRAGMA foreign_keys=OFF"))
            db.commit()

    def test_bad_signature(self, client, db):
        resp = _post_event(
            client, "charge.dispute.created", _dispute_object(), signature="t=1,v1=deadbeef"
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert db.query(Dispute).count() == 0

    def test_missing_signature(self, client):
        resp = client.post("/stripe/webhook", content=b"{}")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"

    def test_dispute_closed(self, client, db, recorded_dispute):
        resp = _post_event(client, "charge.dispute.closed", _dispute_object(status="won"))

        assert resp.json()["data"] == {"event_type": "charge.dispute.closed", "handled": True}
        db.refresh(recorded_dispute)
        assert recorded_dispute.status == "won"

    def test_other_events_are_ignored(self, client):
        resp = _post_event(client, "invoice.paid", {"id": "in_123"})
        assert resp.json()["data"] == {"event_type": "invoice.paid", "handled": False}


class TestListDisputes:
    def test_participant_sees_dispute(self, client, auth_as, mentee, recorded_dispute):
        auth_as(mentee)
        data = client.get("/disputes").json()["data"]
        assert [d["ulid"] for d in data] == [recorded_dispute.ulid]

    def test_filter_by_session(self, client, auth_as, coach, recorded_dispute):
        auth_as(coach)
        assert client.get("/disputes", params={"session_ulid": "0" * 26}).json()["data"] == []
        data = client.get("/disputes", params={"session_ulid": recorded_dispute.session_ulid}).json()["data"]
        assert len(data) == 1

    def test_outsider_sees_nothing(self, client, auth_as, make_user, recorded_dispute):
        auth_as(make_user())
        assert client.get("/disputes").json()["data"] == []

    def test_moderator_sees_everything(self, client, auth_as, make_user, recorded_dispute):
        auth_as(make_user(system_role=SystemRole.SYSTEM_MODERATOR))
        assert len(client.get("/disputes").json()["data"]) == 1


class TestSubmitEvidence:
    @pytest.fixture
    def modify_calls(self, monkeypatch):
        calls = []

        def fake_modify(dispute_id, **kwargs):
            calls.append((dispute_id, kwargs))
            return SimpleNamespace(id=dispute_id, status="under_review")

        monkeypatch.setattr(stripe.Dispute, "modify", fake_modify)
        return calls

    def test_coach_submits_evidence(self, client, db, auth_as, coach, recorded_dispute, modify_calls):
        auth_as(coach)

        resp = client.post(
            f"/disputes/{recorded_dispute.ulid}/evidence",
            json={
                "customerName": "Mia Mentee",
                "serviceDate": "2030-01-02",
                "uncategorizedText": "  Session held on Zoom for 60 minutes ",
                "billingAddress": "   ",
            },
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "under_review"
        assert modify_calls == [
            (
                "dp_test_1",
                {
                    "evidence": {
                        "customer_name": "Mia Mentee",
                        "service_date": "2030-01-02",
                        "uncategorized_text": "Session held on Zoom for 60 minutes",
                    }
                },
            )
        ]
        db.refresh(recorded_dispute)
        assert recorded_dispute.evidence["customerName"] == "Mia Mentee"
        assert "billingAddress" not in recorded_dispute.evidence

    def test_mentee_cannot_submit(self, client, auth_as, mentee, recorded_dispute, modify_calls):
        auth_as(mentee)
        resp = client.post(f"/disputes/{recorded_dispute.ulid}/evidence", json={"customerName": "x"})
        assert resp.status_code == 403
        assert modify_calls == []

    def test_empty_evidence(self, client, auth_as, coach, recorded_dispute, modify_calls):
        auth_as(coach)
        resp = client.post(f"/disputes/{recorded_dispute.ulid}/evidence", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_dispute(self, client, auth_as, coach, modify_calls):
        auth_as(coach)
        resp = client.post(f"/disputes/{'0' * 26}/evidence", json={"customerName": "x"})
        assert resp.status_code == 404

    def test_stripe_rejection(self, client, db, auth_as, coach, recorded_dispute, monkeypatch):
        def reject(dispute_id, **kwargs):
            raise stripe.InvalidRequestError("Evidence already submitted", param="evidence")

        monkeypatch.setattr(stripe.Dispute, "modify", reject)
        auth_as(coach)

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/evidence", json={"customerName": "x"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "STRIPE_ERROR"
        db.refresh(recorded_dispute)
        assert recorded_dispute.status == "needs_response"


class TestRefund:
    @pytest.fixture
    def refund_calls(self, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="re_test_1", status="succeeded")

        monkeypatch.setattr(stripe.Refund, "create", fake_create)
        return calls

    def test_owner_refunds_in_full(self, client, db, auth_as, make_user, session, recorded_dispute, refund_calls):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "refunded"
        assert data["stripe_refund_id"] == "re_test_1"
        assert refund_calls == [
            {"payment_intent": "pi_disputed", "amount": 15000, "reason": "requested_by_customer"}
        ]
        db.refresh(session)
        assert session.status == SessionStatus.REFUNDED

    def test_partial_refund(self, client, auth_as, make_user, recorded_dispute, refund_calls):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund", json={"amount": 5000})

        assert resp.status_code == 200
        assert refund_calls[0]["amount"] == 5000

    def test_amount_above_dispute(self, client, auth_as, make_user, recorded_dispute, refund_calls):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund", json={"amount": 20000})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert refund_calls == []

    def test_refund_only_once(self, client, auth_as, make_user, recorded_dispute, refund_calls):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        client.post(f"/disputes/{recorded_dispute.ulid}/refund")

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "ALREADY_REFUNDED"
        assert len(refund_calls) == 1

    def test_coach_cannot_refund(self, client, db, auth_as, coach, recorded_dispute, refund_calls):
        auth_as(coach)

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund")

        assert resp.status_code == 403
        assert refund_calls == []
        assert db.query(CoachingSession).one().status == SessionStatus.DISPUTED

    def test_stripe_failure(self, client, db, auth_as, make_user, recorded_dispute, monkeypatch):
        def reject(**kwargs):
            raise stripe.InvalidRequestError("Charge already refunded", param="payment_intent")

        monkeypatch.setattr(stripe.Refund, "create", reject)
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = client.post(f"/disputes/{recorded_dispute.ulid}/refund")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "STRIPE_ERROR"
        db.refresh(recorded_dispute)
        assert recorded_dispute.status == "needs_response"


class TestPlans:
    def test_lists_active_plans_by_price(self, client, db):
        db.add_all(
            [
                SubscriptionPlan(name="Pro", amount=4900, features=["Unlimited sessions"]),
                SubscriptionPlan(name="Starter", amount=1900, features=[]),
                SubscriptionPlan(name="Legacy", amount=900, is_active=False),
            ]
        )
        db.commit()

        data = client.get("/billing/plans").json()["data"]

        assert [p["name"] for p in data] == ["Starter", "Pro"]
        assert data[1]["features"] == ["Unlimited sessions"]
