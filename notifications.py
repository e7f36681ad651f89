"""
SMS notifications through the sms.ir REST API, and phone number verification.

Order and payment notifications are best effort: they run after the response
has been sent and a failure is only logged.
"""

import logging
import re
import secrets
from datetime import timedelta
from typing import List, Optional

import httpx
from pymongo.database import Database

from config import Settings
from database import as_utc, oid, utcnow
from errors import BadRequestError, SmsError

log = logging.getLogger(__name__)

MOBILE_RE = re.compile(r"^(09|\+989)\d{9}$")
MAX_CODE_ATTEMPTS = 5

ORDER_STATUS_TEXT = {
    "PENDING": "awaiting payment",
    "PENDING_PAYMENT": "awaiting payment",
    "PAID": "paid",
    "PROCESSING": "processing",
    "SHIPPED": "shipped",
    "DELIVERED": "delivered",
    "CANCELED": "canceled",
}


def normalize_mobile(mobile: Optional[str]) -> str:
    mobile = (mobile or "").strip()
    if not MOBILE_RE.match(mobile):
        raise BadRequestError("Invalid mobile number")
    if mobile.startswith("+98"):
        mobile = "0" + mobile[3:]
    return mobile


class SmsClient:
    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self.http = http or httpx.Client(timeout=settings.http_timeout_seconds)

    def _call(self, method: str, path: str, payload: Optional[dict] = None):
        url = self.settings.smsir_base_url.rstrip("/") + path
        headers = {"X-API-KEY": self.settings.smsir_api_key, "Accept": "application/json"}
        try:
            resp = self.http.request(method, url, json=payload, headers=headers)
            data = resp.json()
        except httpx.HTTPError as exc:
            log.error("sms.ir call to %s failed: %s", path, exc)
            raise SmsError("SMS provider is unavailable") from exc
        except ValueError as exc:
            raise SmsError("SMS provider returned an invalid response") from exc
        if not isinstance(data, dict) or data.get("status") != 1:
            message = data.get("message") if isinstance(data, dict) else None
            log.error("sms.ir rejected %s: %s", path, message)
            raise SmsError(f"Sending SMS failed: {message or 'unknown error'}")
        return data.get("data")

    def send(self, mobile: str, message: str) -> dict:
        return self.send_bulk([mobile], message)

    def send_bulk(self, mobiles: List[str], message: str) -> dict:
        if not mobiles:
            raise BadRequestError("Recipient list is empty")
        if not message or not message.strip():
            raise BadRequestError("Message text cannot be empty")
        numbers = [normalize_mobile(m) for m in mobiles]
        log.info("Sending SMS to %d recipient(s)", len(numbers))
        data = self._call(
            "POST",
            "/send/bulk",
            {"lineNumber": self.settings.smsir_line_number, "messageText": message, "mobiles": numbers},
        )
        return data or {}

    def send_verify(self, mobile: str, code: str) -> dict:
        mobile = normalize_mobile(mobile)
        log.info("Sending verification code to %s", mobile)
        data = self._call(
            "POST",
            "/send/verify",
            {
                "mobile": mobile,
                "templateId": self.settings.smsir_verify_template_id,
                "parameters": [{"name": "CODE", "value": str(code)}],
            },
        )
        return data or {}

    def credit(self) -> float:
        return self._call("GET", "/credit")


class NotificationDispatcher:
    def __init__(self, db: Database, sms: SmsClient):
        self.db = db
        self.sms = sms

    def _phone_of(self, user_id: str) -> Optional[str]:
        user = self.db["user"].find_one({"_id": oid(user_id)}, {"phone": 1})
        return user.get("phone") if user else None

    def order_status_changed(self, order_id: str, status: str) -> None:
        try:
            order = self.db["order"].find_one({"_id": oid(order_id)})
            if not order:
                return
            phone = self._phone_of(order["user_id"])
            if not phone:
                log.debug("No phone on file for order %s, skipping status SMS", order_id)
                return
            text = ORDER_STATUS_TEXT.get(status, status)
            message = (
                f"Shop\nYour order status changed to \"{text}\".\n"
                f"Order number: {order['order_number']}\nThank you for your purchase"
            )
            self.sms.send(phone, message)
        except Exception:
            log.exception("Order status notification failed for order %s", order_id)

    def payment_confirmed(self, transaction_id: str) -> None:
        try:
            txn = self.db["transaction"].find_one({"_id": oid(transaction_id)})
            if not txn or not txn.get("order_id"):
                return
            phone = self._phone_of(txn["user_id"])
            order = self.db["order"].find_one({"_id": oid(txn["order_id"])})
            if not phone or not order:
                return
            message = (
                f"Shop\nYour payment was successful.\nOrder number: {order['order_number']}\n"
                f"Amount: {txn['amount']:,} Toman\nThank you for your purchase"
            )
            self.sms.send(phone, message)
        except Exception:
            log.exception("Payment confirmation SMS failed for transaction %s", transaction_id)


class PhoneVerifier:
    """One-time codes sent by SMS to confirm a phone number."""

    def __init__(self, db: Database, sms: SmsClient, settings: Settings):
        self.collection = db["verification_code"]
        self.users = db["user"]
        self.sms = sms
        self.ttl = settings.verification_code_ttl_seconds

    def send_code(self, phone: str) -> int:
        mobile = normalize_mobile(phone)
        code = str(secrets.randbelow(900000) + 100000)
        self.collection.update_one(
            {"phone": mobile},
            {"$set": {"code": code, "attempts": 0, "expires_at": utcnow() + timedelta(seconds=self.ttl)}},
            upsert=True,
        )
        self.sms.send_verify(mobile, code)
        return self.ttl

    def verify_code(self, phone: str, code: str, user: Optional[dict] = None) -> str:
        mobile = normalize_mobile(phone)
        doc = self.collection.find_one({"phone": mobile})
        if not doc or as_utc(doc["expires_at"]) < utcnow():
            raise BadRequestError("Verification code is invalid or has expired")
        if doc["code"] != str(code).strip():
            if doc.get("attempts", 0) + 1 >= MAX_CODE_ATTEMPTS:
                self.collection.delete_one({"_id": doc["_id"]})
            else:
                self.collection.update_one({"_id": doc["_id"]}, {"$inc": {"attempts": 1}})
            raise BadRequestError("Verification code is incorrect")

        self.collection.delete_one({"_id": doc["_id"]})
        if user:
            self.users.update_one(
                {"_id": user["_id"]},
                {"$set": {"phone": mobile, "phone_verified": True, "updated_at": utcnow()}},
            )
            log.info("Phone number verified for user %s", user["_id"])
        return mobile
