import json

import pytest
from bson import ObjectId

from database import create_document
from tests.conftest import KEY_SECRET, WEBHOOK_SECRET, sign


@pytest.fixture
def order(client, user_headers):
    item = {"type": "product", "item_id": str(ObjectId()), "name": "Hair Oil", "price": 10, "quantity": 2}
    resp = client.post("/api/orders", json={"items": [item], "payment_method": "card"}, headers=user_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def stored_order(db, order):
    return db["order"].find_one({"_id": ObjectId(order["id"])})


def start_payment(client, headers, **body):
    resp = client.post("/api/payments/create", json=body, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def send_webhook(client, event, secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps(event).encode()
    signature = signature if signature is not None else sign(body, secret)
    return client.post(
        "/api/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
    )


def captured_event(charge_id, payment_id="pay_001"):
    return {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": charge_id, "status": "captured"}}},
    }


def failed_event(charge_id, payment_id="pay_001"):
    return {
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": charge_id, "status": "failed"}}},
    }


def refund_event(payment_id="pay_001"):
    return {
        "event": "refund.processed",
        "payload": {"refund": {"entity": {"id": "rfnd_001", "payment_id": payment_id}}},
    }


# ---------- Initiation ----------

def test_initiate_opens_pending_charge(client, db, gateway, user, user_headers, order):
    result = start_payment(client, user_headers, order_id=order["id"])

    assert result["success"] is True
    assert result["charge_id"] == "order_test0001"
    assert result["key_id"] == "rzp_test_key"
    assert gateway.created[0]["amount"] == 2000
    assert gateway.created[0]["metadata"]["order_id"] == order["id"]

    payment = result["payment"]
    assert payment["status"] == "pending"
    assert payment["amount"] == 20
    assert payment["gateway"] == "razorpay"
    assert payment["user_id"] == str(user["_id"])

    # the charge is only opened, the order is not paid yet
    stored = stored_order(db, order)
    assert stored["payment_details"]["status"] == "pending"
    assert stored["status"] == "pending"


def test_initiate_marks_paid_when_gateway_already_settled(client, db, gateway, user_headers, order):
    gateway.next_status = "paid"
    result = start_payment(client, user_headers, order_id=order["id"])

    assert result["payment"]["status"] == "succeeded"
    stored = stored_order(db, order)
    assert stored["payment_details"]["status"] == "paid"
    assert stored["payment_details"]["paid_at"] is not None
    assert stored["status"] == "confirmed"
    assert stored["status_history"][-1]["note"] == "Payment received"


@pytest.mark.parametrize("body", [{}, {"order_id": "x", "booking_id": "y"}])
def test_initiate_needs_exactly_one_reference(client, user_headers, body):
    resp = client.post("/api/payments/create", json=body, headers=user_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Provide exactly one of order_id or booking_id"


def test_initiate_gateway_failure(client, db, gateway, user_headers, order):
    gateway.fail = True
    resp = client.post("/api/payments/create", json={"order_id": order["id"]}, headers=user_headers)
    assert resp.status_code == 502
    assert resp.json()["message"] == "Payment processing failed"
    assert db["payment"].count_documents({}) == 0


def test_initiate_for_someone_elses_order(client, make_user, headers_for, order):
    resp = client.post("/api/payments/create", json={"order_id": order["id"]}, headers=headers_for(make_user()))
    assert resp.status_code == 403


def test_initiate_for_cancelled_order(client, user_headers, order):
    client.post(f"/api/orders/{order['id']}/cancel", json={}, headers=user_headers)
    resp = client.post("/api/payments/create", json={"order_id": order["id"]}, headers=user_headers)
    assert resp.status_code == 400


def test_process_alias(client, user_headers, order):
    resp = client.post("/api/payments/process", json={"order_id": order["id"]}, headers=user_headers)
    assert resp.status_code == 200


def test_initiate_for_booking_uses_service_price(client, db, gateway, user, admin, user_headers):
    service_id = create_document(db, "service", {
        "name": "Facial", "description": "Deep clean", "price": 45.5, "duration": 60,
        "category": "facial", "availability": True, "is_active": True, "created_by": str(admin["_id"]),
    })
    booking_id = create_document(db, "booking", {
        "user_id": str(user["_id"]), "service_id": service_id, "provider_id": str(admin["_id"]),
        "time": "10:00", "duration": 60, "status": "pending", "payment_status": "pending",
    })

    result = start_payment(client, user_headers, booking_id=booking_id)
    assert gateway.created[0]["amount"] == 4550
    assert result["payment"]["booking_id"] == booking_id

    send_webhook(client, captured_event(result["charge_id"]))
    booking = db["booking"].find_one({"_id": ObjectId(booking_id)})
    assert booking["payment_status"] == "paid"
    assert booking["status"] == "confirmed"


# ---------- Client confirmation ----------

def test_verify_signature_marks_order_paid(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    signature = sign(f"{charge_id}|pay_777".encode(), KEY_SECRET)

    resp = client.post(
        "/api/payments/verify",
        json={"gateway_order_id": charge_id, "gateway_payment_id": "pay_777", "signature": signature},
        headers=user_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["payment"]["status"] == "succeeded"
    assert resp.json()["payment"]["transaction_id"] == "pay_777"

    stored = stored_order(db, order)
    assert stored["payment_details"]["status"] == "paid"
    assert stored["payment_details"]["transaction_id"] == "pay_777"
    assert stored["status"] == "confirmed"


def test_verify_rejects_tampered_signature(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    signature = sign(f"{charge_id}|pay_777".encode(), "wrong-secret")

    resp = client.post(
        "/api/payments/verify",
        json={"gateway_order_id": charge_id, "gateway_payment_id": "pay_777", "signature": signature},
        headers=user_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid payment signature"
    assert stored_order(db, order)["payment_details"]["status"] == "pending"
    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "pending"


def test_non_ascii_signatures_are_rejected(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    before = stored_order(db, order)

    resp = client.post(
        "/api/payments/verify",
        json={"gateway_order_id": charge_id, "gateway_payment_id": "pay_777", "signature": "é"},
        headers=user_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid payment signature"

    resp = client.post(
        "/api/payments/webhook",
        content=json.dumps(captured_event(charge_id)).encode(),
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": "é".encode("latin-1")},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid webhook signature"

    after = stored_order(db, order)
    assert after["payment_details"] == before["payment_details"]
    assert after["version"] == before["version"]
    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "pending"


def test_complete_mirrors_gateway_status(client, db, gateway, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]

    resp = client.post("/api/payments/complete", json={"charge_id": charge_id}, headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["payment"]["status"] == "pending"

    gateway.charges[charge_id] = "paid"
    resp = client.post("/api/payments/complete", json={"charge_id": charge_id}, headers=user_headers)
    assert resp.json()["status"] == "paid"
    assert resp.json()["payment"]["status"] == "succeeded"
    assert stored_order(db, order)["payment_details"]["status"] == "paid"


def test_complete_unknown_charge(client, user_headers):
    resp = client.post("/api/payments/complete", json={"charge_id": "order_missing"}, headers=user_headers)
    assert resp.status_code == 404


# ---------- Webhooks ----------

def test_webhook_with_bad_signature_changes_nothing(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    before = stored_order(db, order)

    resp = send_webhook(client, captured_event(charge_id), secret="attacker-secret")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid webhook signature"

    resp = send_webhook(client, captured_event(charge_id), signature="")
    assert resp.status_code == 400

    after = stored_order(db, order)
    assert after["status"] == before["status"]
    assert after["payment_details"] == before["payment_details"]
    assert after["version"] == before["version"]
    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "pending"


def test_captured_webhook_is_idempotent(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]

    first = send_webhook(client, captured_event(charge_id))
    assert first.status_code == 200
    assert first.json() == {"received": True, "event": "payment.captured"}
    once = stored_order(db, order)
    assert once["payment_details"]["status"] == "paid"
    assert once["payment_details"]["transaction_id"] == "pay_001"
    assert once["status"] == "confirmed"

    assert send_webhook(client, captured_event(charge_id)).status_code == 200
    twice = stored_order(db, order)
    assert twice["version"] == once["version"]
    assert [h["status"] for h in twice["status_history"]] == ["pending", "confirmed"]


def test_failed_webhook(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    send_webhook(client, failed_event(charge_id))

    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "failed"
    stored = stored_order(db, order)
    assert stored["payment_details"]["status"] == "failed"
    assert stored["status"] == "pending"


def test_late_failure_does_not_undo_capture(client, db, user_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    send_webhook(client, captured_event(charge_id))
    send_webhook(client, failed_event(charge_id))

    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "succeeded"
    assert stored_order(db, order)["payment_details"]["status"] == "paid"


def test_refund_webhook_after_cancellation(client, db, user_headers, admin_headers, order):
    charge_id = start_payment(client, user_headers, order_id=order["id"])["charge_id"]
    send_webhook(client, captured_event(charge_id))
    client.post(
        f"/api/orders/{order['id']}/cancel",
        json={"reason": "Customer request", "refund_status": "pending"},
        headers=admin_headers,
    )

    resp = send_webhook(client, refund_event())
    assert resp.status_code == 200

    assert db["payment"].find_one({"gateway_charge_id": charge_id})["status"] == "refunded"
    stored = stored_order(db, order)
    assert stored["payment_details"]["status"] == "refunded"
    assert stored["cancellation"]["refund_status"] == "processed"
    assert stored["status"] == "refunded"
    assert [h["status"] for h in stored["status_history"]] == ["pending", "confirmed", "cancelled", "refunded"]


def test_unrelated_webhooks_are_acknowledged(client, db):
    assert send_webhook(client, {"event": "payment.authorized", "payload": {}}).json() == {"received": True}
    assert send_webhook(client, captured_event("order_unknown")).json() == {"received": True}
    assert db["payment"].count_documents({}) == 0


def test_malformed_webhook_body(client):
    body = b"not json"
    resp = client.post(
        "/api/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": sign(body, WEBHOOK_SECRET)},
    )
    assert resp.status_code == 400


# ---------- History ----------

def test_history_and_detail(client, make_user, headers_for, user, user_headers, order):
    payment = start_payment(client, user_headers, order_id=order["id"])["payment"]

    history = client.get("/api/payments/history", headers=user_headers).json()
    assert [p["id"] for p in history] == [payment["id"]]
    assert history[0]["order"]["order_number"] == order["order_number"]

    detail = client.get(f"/api/payments/{payment['id']}", headers=user_headers).json()
    assert detail["order"]["total_amount"] == 20
    assert detail["user"] == {"name": user["name"], "email": user["email"]}

    other = headers_for(make_user())
    assert client.get("/api/payments/history", headers=other).json() == []
    resp = client.get(f"/api/payments/{payment['id']}", headers=other)
    assert resp.status_code == 403
    assert resp.json()["message"] == "Unauthorized access to payment details"

    assert client.get(f"/api/payments/{ObjectId()}", headers=user_headers).status_code == 404
