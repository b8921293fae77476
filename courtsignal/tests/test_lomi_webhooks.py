"""Tests for the Lomi payment webhook endpoint.

WHAT: Signature check, payment recording, reservation confirmation and
      replay handling of POST /webhooks/lomi
WHY: Lomi retries deliveries; a replay must be acknowledged without a
     second payment row or a second state change

REFERENCES:
  - courtsignal/routers/lomi_webhooks.py
  - courtsignal/services/webhook_ledger.py
"""

import uuid

from sqlalchemy import func, select

from courtsignal.models import Payment, PaymentStatusEnum, Reservation, ReservationStatusEnum
from courtsignal.routers.lomi_webhooks import resolve_webhook_event_id, verify_lomi_signature

WEBHOOK_URL = "/webhooks/lomi"


def _payment_succeeded(reservation_id, event_id="evt_lomi_1", **data_overrides):
    data = {
        "transaction_id": "txn_123",
        "gross_amount": 300,
        "currency_code": "MAD",
        "metadata": {"reservation_id": str(reservation_id)},
    }
    data.update(data_overrides)
    payload = {"event": "PAYMENT_SUCCEEDED", "data": data}
    if event_id:
        payload["id"] = event_id
    return payload


def _payment_count(db):
    return db.execute(select(func.count()).select_from(Payment)).scalar()


class TestSignature:

    def test_valid_signature(self):
        import hashlib
        import hmac

        body = b'{"event":"PAYMENT_SUCCEEDED"}'
        signature = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert verify_lomi_signature(body, signature, "secret") is True

    def test_rejects_wrong_signature_or_missing_secret(self):
        assert verify_lomi_signature(b"{}", "deadbeef", "secret") is False
        assert verify_lomi_signature(b"{}", None, "secret") is False
        assert verify_lomi_signature(b"{}", "deadbeef", None) is False

    def test_bad_signature_is_400(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id), secret="wrong-secret")

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        assert _payment_count(test_db_session) == 0


class TestEventIdResolution:

    def test_payload_id_first(self):
        assert resolve_webhook_event_id({"id": "evt_1"}, {"X-Lomi-Event-Id": "hdr"}, "PAYMENT_SUCCEEDED", {}) == "evt_1"

    def test_header_fallback(self):
        assert resolve_webhook_event_id({}, {"X-Lomi-Event-Id": "hdr"}, "PAYMENT_SUCCEEDED", {}) == "hdr"

    def test_derived_from_payment_id(self):
        fields = {"payment_id": "txn_9", "checkout_session_id": None}
        assert resolve_webhook_event_id({}, {}, "PAYMENT_SUCCEEDED", fields) == "PAYMENT_SUCCEEDED:txn_9"

    def test_body_hash_when_no_identifier(self):
        import hashlib

        fields = {"payment_id": None, "checkout_session_id": None}
        body_a = b'{"event":"PAYMENT_SUCCEEDED","data":{"amount":1}}'
        body_b = b'{"event":"PAYMENT_SUCCEEDED","data":{"amount":2}}'

        key_a = resolve_webhook_event_id({}, {}, "PAYMENT_SUCCEEDED", fields, body_a)
        key_b = resolve_webhook_event_id({}, {}, "PAYMENT_SUCCEEDED", fields, body_b)

        assert key_a == f"PAYMENT_SUCCEEDED:sha256:{hashlib.sha256(body_a).hexdigest()}"
        assert key_a != key_b
        assert "None" not in key_a


class TestProcessing:

    def test_payment_confirms_reservation(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id))

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": False, "message": "Webhook processed"}

        test_db_session.expire_all()
        stored = test_db_session.get(Reservation, reservation_id)
        assert stored.status == ReservationStatusEnum.confirmed
        assert stored.webhook_event_id == "evt_lomi_1"
        assert stored.webhook_processed_at is not None

        payment = test_db_session.execute(select(Payment)).scalar_one()
        assert payment.reservation_id == reservation_id
        assert payment.provider_payment_id == "txn_123"
        assert payment.payment_provider == "lomi"
        assert payment.status == PaymentStatusEnum.completed
        assert str(payment.amount) == "300.00"
        assert payment.currency == "MAD"

    def test_checkout_completed_event(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        payload = {
            "id": "evt_checkout_1",
            "event": "checkout.completed",
            "data": {
                "id": "cs_42",
                "amount": 300,
                "currency_code": "MAD",
                "metadata": {"reservation_id": str(reservation_id)},
            },
        }
        body, headers = sign_lomi(payload)

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        payment = test_db_session.execute(select(Payment)).scalar_one()
        assert payment.provider_payment_id == "cs_42"

    def test_replay_is_acknowledged_once(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id))

        first = client.post(WEBHOOK_URL, content=body, headers=headers)
        second = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["duplicate"] is False
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert _payment_count(test_db_session) == 1

    def test_replay_without_event_id_uses_derived_key(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id, event_id=None))

        client.post(WEBHOOK_URL, content=body, headers=headers)
        second = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert second.json()["duplicate"] is True
        assert _payment_count(test_db_session) == 1
        test_db_session.expire_all()
        assert test_db_session.get(Reservation, reservation_id).webhook_event_id == "PAYMENT_SUCCEEDED:txn_123"

    def test_deliveries_without_any_id_do_not_collide(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_a = make_reservation().id
        reservation_b = make_reservation(court_id="court-2").id

        for reservation_id in (reservation_a, reservation_b):
            payload = {
                "event": "PAYMENT_SUCCEEDED",
                "data": {
                    "amount": 300,
                    "currency_code": "MAD",
                    "metadata": {"reservation_id": str(reservation_id)},
                },
            }
            body, headers = sign_lomi(payload)
            response = client.post(WEBHOOK_URL, content=body, headers=headers)
            assert response.status_code == 200
            assert response.json()["duplicate"] is False

        test_db_session.expire_all()
        stored_a = test_db_session.get(Reservation, reservation_a)
        stored_b = test_db_session.get(Reservation, reservation_b)
        assert stored_a.status == ReservationStatusEnum.confirmed
        assert stored_b.status == ReservationStatusEnum.confirmed
        assert stored_a.webhook_event_id != stored_b.webhook_event_id
        assert _payment_count(test_db_session) == 2

    def test_body_hash_key_still_dedups_retries(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        payload = _payment_succeeded(reservation_id, event_id=None)
        del payload["data"]["transaction_id"]
        body, headers = sign_lomi(payload)

        client.post(WEBHOOK_URL, content=body, headers=headers)
        second = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert second.json()["duplicate"] is True
        assert _payment_count(test_db_session) == 1

    def test_null_gross_amount_falls_back_to_amount(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id, gross_amount=None, amount=250))

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        payment = test_db_session.execute(select(Payment)).scalar_one()
        assert str(payment.amount) == "250.00"

    def test_new_delivery_for_processed_reservation(self, client, test_db_session, make_reservation, sign_lomi):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id, event_id="evt_a"))
        client.post(WEBHOOK_URL, content=body, headers=headers)

        body, headers = sign_lomi(_payment_succeeded(reservation_id, event_id="evt_b", transaction_id="txn_456"))
        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert _payment_count(test_db_session) == 1

    def test_unknown_reservation_acknowledged(self, client, test_db_session, sign_lomi):
        body, headers = sign_lomi(_payment_succeeded(uuid.uuid4()))

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["duplicate"] is False
        assert "not found" in response.json()["message"]
        assert _payment_count(test_db_session) == 0


class TestRejectedPayloads:

    def test_unhandled_event_acknowledged(self, client, sign_lomi):
        body, headers = sign_lomi({"id": "evt_x", "event": "REFUND_CREATED", "data": {"id": "r_1"}})
        response = client.post(WEBHOOK_URL, content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Event type not handled"

    def test_missing_reservation_id(self, client, sign_lomi):
        payload = _payment_succeeded(uuid.uuid4())
        payload["data"]["metadata"] = {}
        body, headers = sign_lomi(payload)
        assert client.post(WEBHOOK_URL, content=body, headers=headers).status_code == 400

    def test_missing_currency(self, client, sign_lomi, make_reservation):
        reservation_id = make_reservation().id
        body, headers = sign_lomi(_payment_succeeded(reservation_id, currency_code=None))
        assert client.post(WEBHOOK_URL, content=body, headers=headers).status_code == 400

    def test_malformed_reservation_id(self, client, sign_lomi):
        payload = _payment_succeeded(uuid.uuid4())
        payload["data"]["metadata"] = {"reservation_id": "not-a-uuid"}
        body, headers = sign_lomi(payload)
        assert client.post(WEBHOOK_URL, content=body, headers=headers).status_code == 400
