import json

import pytest

from coachmarket.config import CAL_WEBHOOK_SECRET
from coachmarket.models import BookingStatus, CalBooking
from coachmarket.webhook_security import CAL_SIGNATURE_HEADER, create_webhook_signature

RECEIVER = "/cal/webhooks/receiver"


def _post(client, event, secret=CAL_WEBHOOK_SECRET, signature=None):
    body = event if isinstance(event, bytes) else json.dumps(event).encode()
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers[CAL_SIGNATURE_HEADER] = signature or create_webhook_signature(secret, body)
    return client.post(RECEIVER, content=body, headers=headers)


def _booking_event(trigger, uid="cal-uid-1", organizer_id=101, **payload):
    data = {
        "uid": uid,
        "title": "Intro Session",
        "description": "First call",
        "startTime": "2030-05-01T15:00:00Z",
        "endTime": "2030-05-01T16:00:00Z",
        "eventTypeId": 555,
        "organizer": {"id": organizer_id, "email": "coach@example.com"},
        "attendees": [
            {"email": "mentee@example.com", "name": "Mia Mentee", "timeZone": "Europe/Berlin"},
            {"email": "guest@example.com", "name": "Guest"},
        ],
        "metadata": {"videoCallUrl": "https://cal.video/abc"},
    }
    data.update(payload)
    return {"triggerEvent": trigger, "payload": data}


@pytest.fixture
def integration(coach, make_integration):
    return make_integration(coach, managed_user_id=101)


class TestSignature:
    def test_missing_signature(self, client):
        resp = _post(client, _booking_event("BOOKING_CREATED"), signature=False)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_invalid_signature(self, client):
        resp = _post(client, _booking_event("BOOKING_CREATED"), signature="deadbeef")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid webhook signature"


class TestPayloadValidation:
    def test_malformed_json(self, client):
        resp = _post(client, b"{not json")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PAYLOAD"

    def test_missing_trigger(self, client):
        resp = _post(client, {"payload": {"uid": "x"}})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MISSING_TRIGGER"

    def test_unhandled_event_is_acknowledged(self, client):
        resp = _post(client, {"triggerEvent": "OOO_CREATED", "payload": {}})
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "success": False,
            "message": "Unhandled event type: OOO_CREATED",
            "event_type": "OOO_CREATED",
        }

    def test_meeting_ended_is_acknowledged(self, client):
        resp = _post(client, {"triggerEvent": "MEETING_ENDED", "payload": {"uid": "x"}})
        assert resp.status_code == 200
        assert resp.json()["data"]["success"] is True

    def test_type_field_is_accepted(self, client, db, integration):
        event = _booking_event("BOOKING_CREATED")
        event["type"] = event.pop("triggerEvent")
        resp = _post(client, event)
        assert resp.status_code == 200
        assert db.query(CalBooking).count() == 1


class TestBookingSync:
    def test_created_booking_is_stored(self, client, db, coach, integration):
        resp = _post(client, _booking_event("BOOKING_CREATED"))

        assert resp.status_code == 200
        assert resp.json()["data"] == {"success": True, "event_type": "BOOKING_CREATED"}
        booking = db.query(CalBooking).filter(CalBooking.cal_booking_uid == "cal-uid-1").one()
        assert booking.user_ulid == coach.ulid
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.attendee_email == "mentee@example.com"
        assert booking.attendee_time_zone == "Europe/Berlin"
        assert booking.all_attendees == "mentee@example.com, guest@example.com"
        assert booking.meeting_url == "https://cal.video/abc"
        assert booking.cal_event_type_id == "555"
        assert booking.start_time.isoformat() == "2030-05-01T15:00:00"

    def test_string_organizer_id(self, client, db, integration):
        resp = _post(client, _booking_event("BOOKING_CREATED", organizer_id="101"))
        assert resp.status_code == 200
        assert db.query(CalBooking).count() == 1

    def test_requested_booking_is_pending(self, client, db, integration):
        _post(client, _booking_event("BOOKING_REQUESTED"))
        assert db.query(CalBooking).one().status == BookingStatus.PENDING

    def test_rejected_booking(self, client, db, integration):
        _post(client, _booking_event("BOOKING_CREATED"))
        _post(client, _booking_event("BOOKING_REJECTED"))
        db.expire_all()
        assert db.query(CalBooking).one().status == BookingStatus.REJECTED

    def test_update_overwrites_details(self, client, db, integration):
        _post(client, _booking_event("BOOKING_CREATED"))
        _post(
            client,
            _booking_event(
                "BOOKING_RESCHEDULED",
                startTime="2030-05-02T09:00:00Z",
                endTime="2030-05-02T10:00:00Z",
            ),
        )
        db.expire_all()
        booking = db.query(CalBooking).one()
        assert booking.start_time.isoformat() == "2030-05-02T09:00:00"
        assert booking.status == BookingStatus.CONFIRMED

    def test_cancel_existing_booking(self, client, db, integration):
        _post(client, _booking_event("BOOKING_CREATED"))
        resp = _post(client, _booking_event("BOOKING_CANCELLED"))

        assert resp.status_code == 200
        db.expire_all()
        booking = db.query(CalBooking).one()
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancellation_reason == "Cancelled via Cal.com"

    def test_cancel_keeps_given_reason(self, client, db, integration):
        _post(client, _booking_event("BOOKING_CREATED"))
        _post(client, _booking_event("BOOKING_CANCELLED", cancellationReason="Coach is sick"))
        db.expire_all()
        assert db.query(CalBooking).one().cancellation_reason == "Coach is sick"

    def test_cancel_unknown_booking_is_ignored(self, client, db, integration):
        resp = _post(client, _booking_event("BOOKING_CANCELLED", uid="never-seen"))
        assert resp.status_code == 200
        assert db.query(CalBooking).count() == 0

    def test_unknown_organizer_fails(self, client, integration):
        resp = _post(client, _booking_event("BOOKING_CREATED", organizer_id=999))
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "WEBHOOK_PROCESSING_ERROR"

    def test_attendees_must_be_a_list(self, client, integration):
        resp = _post(client, _booking_event("BOOKING_CREATED", attendees={"email": "x@example.com"}))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"organizer": "coach@example.com"},
            {"organizer": [101]},
            {"attendees": ["mentee@example.com"]},
            {"attendees": [{"email": "mentee@example.com"}, None]},
        ],
    )
    def test_wrongly_shaped_fields_are_rejected(self, client, db, integration, overrides):
        resp = _post(client, _booking_event("BOOKING_CREATED", **overrides))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PAYLOAD"
        assert db.query(CalBooking).count() == 0

    @pytest.mark.parametrize("payload", [["uid"], "cal-uid-1", 42])
    def test_payload_must_be_an_object(self, client, integration, payload):
        resp = _post(client, {"triggerEvent": "BOOKING_CREATED", "payload": payload})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PAYLOAD"

    def test_missing_uid_fails(self, client, integration):
        resp = _post(client, _booking_event("BOOKING_CREATED", uid=None))
        assert resp.status_code == 500
