from datetime import timedelta

import pytest

from conftest import bearer
from database import utcnow
from errors import BadRequestError
from notifications import normalize_mobile


def test_normalize_mobile():
    assert normalize_mobile("09121234567") == "09121234567"
    assert normalize_mobile("+989121234567") == "09121234567"
    for bad in ("9121234567", "0912123456", "+98912123456x", "", None):
        with pytest.raises(BadRequestError):
            normalize_mobile(bad)


def test_dispatcher_swallows_sms_failure(app, db, sms, caplog):
    user_id = db["user"].insert_one({"username": "alice", "email": "alice@shop.io", "phone": "09121234567"}).inserted_id
    order_id = db["order"].insert_one({
        "user_id": str(user_id), "order_number": "ORD-00AA11BB", "status": "SHIPPED",
    }).inserted_id
    sms.fail = True

    app.state.notifier.order_status_changed(str(order_id), "SHIPPED")
    assert "Order status notification failed" in caplog.text
    assert len(sms.calls) == 1


def test_dispatcher_ignores_missing_records(app, sms):
    app.state.notifier.order_status_changed("64b7f0c2a1b2c3d4e5f60718", "PAID")
    app.state.notifier.payment_confirmed("64b7f0c2a1b2c3d4e5f60718")
    app.state.notifier.payment_confirmed("garbage")
    assert sms.calls == []


def test_send_and_verify_code(client, db, sms):
    r = client.post("/api/sms/send-verification", json={"phone": "+989121234567"})
    assert r.status_code == 200
    assert r.json()["expires_in"] == 120

    path, body, api_key = sms.calls[0]
    assert path.endswith("/send/verify")
    assert api_key == "sms-key"
    assert body["mobile"] == "09121234567"
    code = body["parameters"][0]["value"]
    assert len(code) == 6
    assert db["verification_code"].find_one({"phone": "09121234567"})["code"] == code

    r = client.post("/api/sms/verify-code", json={"phone": "09121234567", "code": code})
    assert r.status_code == 200
    assert db["verification_code"].count_documents({}) == 0

    # codes are single use
    r = client.post("/api/sms/verify-code", json={"phone": "09121234567", "code": code})
    assert r.status_code == 400


def test_wrong_and_expired_codes(client, db, sms):
    client.post("/api/sms/send-verification", json={"phone": "09121234567"})
    code = sms.calls[0][1]["parameters"][0]["value"]
    wrong = "000000" if code != "000000" else "111111"

    r = client.post("/api/sms/verify-code", json={"phone": "09121234567", "code": wrong})
    assert r.status_code == 400
    assert r.json()["message"] == "Verification code is incorrect"

    db["verification_code"].update_one({}, {"$set": {"expires_at": utcnow() - timedelta(seconds=1)}})
    r = client.post("/api/sms/verify-code", json={"phone": "09121234567", "code": code})
    assert r.status_code == 400
    assert r.json()["message"] == "Verification code is invalid or has expired"


def test_confirm_phone_marks_user_verified(client, user_token, db, sms):
    r = client.post("/api/sms/verify-phone", json={"phone": "09121234567"}, headers=bearer(user_token))
    assert r.status_code == 200
    code = sms.calls[0][1]["parameters"][0]["value"]

    r = client.post("/api/sms/confirm-phone", json={"phone": "09121234567", "code": code}, headers=bearer(user_token))
    assert r.status_code == 200
    user = db["user"].find_one({"email": "alice@shop.io"})
    assert user["phone"] == "09121234567"
    assert user["phone_verified"] is True


def test_verify_phone_requires_login(client):
    client.cookies.clear()
    r = client.post("/api/sms/verify-phone", json={"phone": "09121234567"})
    assert r.status_code == 401


def test_invalid_phone_rejected(client, sms):
    r = client.post("/api/sms/send-verification", json={"phone": "12345"})
    assert r.status_code == 400
    assert sms.calls == []


def test_admin_send_and_credit(client, admin_token, user_token, sms):
    r = client.post(
        "/api/sms/admin/send",
        json={"recipients": ["09121234567", "+989351112233"], "message": "Sale starts today"},
        headers=bearer(admin_token),
    )
    assert r.status_code == 200
    body = sms.sent_to("/send/bulk")[0][1]
    assert body["mobiles"] == ["09121234567", "09351112233"]
    assert body["lineNumber"] == "30001234"

    r = client.post(
        "/api/sms/admin/send",
        json={"recipients": "09121234567", "message": "Hello"},
        headers=bearer(admin_token),
    )
    assert r.status_code == 200

    r = client.get("/api/sms/admin/credit", headers=bearer(admin_token))
    assert r.json()["data"]["credit"] == 5000.0

    r = client.get("/api/sms/admin/credit", headers=bearer(user_token))
    assert r.status_code == 403


def test_provider_rejection_is_gateway_error(client, admin_token, sms):
    sms.fail = True
    r = client.post(
        "/api/sms/admin/send",
        json={"recipients": "09121234567", "message": "Hello"},
        headers=bearer(admin_token),
    )
    assert r.status_code == 502
    assert r.json()["message"] == "Sending SMS failed: Invalid line number"
