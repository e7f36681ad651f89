"""
ZarinPal payment gateway adapter.

A payment attempt is a Transaction document:

    (none) --request--> PENDING --verify ok------> SUCCESS
                        PENDING --verify failed--> FAILED
                        PENDING --user cancel----> FAILED
                        PENDING --expiry sweep---> EXPIRED

Every move out of PENDING is a conditional write on ``status == "PENDING"``,
so only one callback ever settles a transaction and touches its order.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import httpx
from pydantic import BaseModel
from pymongo.database import Database

from config import Settings
from database import create_document, mongo_time, oid, serialize, utcnow
from errors import (
    AmountTooLowError,
    BadRequestError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PermissionDeniedError,
    TransactionNotFoundError,
)
from orders import OrderService
from pagination import Pagination, paginate_results
from schemas import PaymentDetails, Transaction

log = logging.getLogger(__name__)

MIN_AMOUNT = 1000
SUCCESS_CODES = (100, 101)

GATEWAY_ERRORS = {
    -1: "Incomplete information submitted",
    -2: "Merchant IP or merchant code is not correct",
    -3: "Payment with the requested amount is not possible due to Shaparak limits",
    -4: "Merchant verification level is below silver",
    -11: "Request not found",
    -12: "Request cannot be edited",
    -21: "No financial operation found for this transaction",
    -22: "Transaction was unsuccessful",
    -33: "Transaction amount does not match the paid amount",
    -34: "Transaction split limit exceeded by count or amount",
    -40: "Access to the requested method is not allowed",
    -41: "Submitted AdditionalData is invalid",
    -42: "Payment id lifetime must be between 30 minutes and 45 days",
    -54: "Request has been archived",
    101: "Payment was successful and has already been verified",
}
UNKNOWN_ERROR = "Unknown payment error"
CANCELLED_BY_USER = "Payment cancelled by user"
EXPIRED_REASON = "Payment session expired"


def gateway_error(code) -> str:
    try:
        return GATEWAY_ERRORS.get(int(code), UNKNOWN_ERROR)
    except (TypeError, ValueError):
        return UNKNOWN_ERROR


class PaymentRequestResult(BaseModel):
    redirect_url: str
    authority: str


class VerificationResult(BaseModel):
    success: bool
    ref_id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[int] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    already_settled: bool = False


class ZarinpalClient:
    """Thin client for the WebGate REST endpoints."""

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self.http = http or httpx.Client(timeout=settings.http_timeout_seconds)

    def _post(self, url: str, payload: dict) -> dict:
        try:
            resp = self.http.post(url, json=payload)
        except httpx.HTTPError as exc:
            log.error("ZarinPal call to %s failed: %s", url, exc)
            raise GatewayUnavailableError("Payment gateway is unavailable, please try again later") from exc
        if resp.status_code >= 500:
            log.error("ZarinPal returned HTTP %s for %s", resp.status_code, url)
            raise GatewayUnavailableError("Payment gateway is unavailable, please try again later")
        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayUnavailableError("Payment gateway returned an invalid response") from exc
        if not isinstance(data, dict):
            raise GatewayUnavailableError("Payment gateway returned an invalid response")
        return data

    def request(self, amount: int, description: str, email: str = "", mobile: str = "") -> dict:
        return self._post(
            self.settings.zarinpal_request_url,
            {
                "MerchantID": self.settings.zarinpal_merchant_id,
                "Amount": amount,
                "Description": description,
                "Email": email or "",
                "Mobile": mobile or "",
                "CallbackURL": self.settings.zarinpal_callback_url,
            },
        )

    def verify(self, authority: str, amount: int) -> dict:
        return self._post(
            self.settings.zarinpal_verify_url,
            {
                "MerchantID": self.settings.zarinpal_merchant_id,
                "Authority": authority,
                "Amount": amount,
            },
        )

    def start_pay_url(self, authority: str) -> str:
        return f"{self.settings.zarinpal_startpay_url}{authority}"


def _order_summary(order_doc: Optional[dict]) -> Optional[dict]:
    if not order_doc:
        return None
    return {
        "id": str(order_doc["_id"]),
        "order_number": order_doc.get("order_number"),
        "total_amount": order_doc.get("cart", {}).get("total_cost", 0),
        "status": order_doc.get("status"),
    }


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min)


class PaymentService:
    def __init__(self, db: Database, settings: Settings, gateway: ZarinpalClient, orders: OrderService):
        self.db = db
        self.collection = db["transaction"]
        self.settings = settings
        self.gateway = gateway
        self.orders = orders

    def request_payment(
        self,
        order_id: str,
        user: dict,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PaymentRequestResult:
        order = self.orders.get(order_id)
        user_id = str(user["_id"])
        if order.user_id != user_id:
            raise PermissionDeniedError("You are not allowed to pay for this order")
        if order.status == "CANCELED":
            raise BadRequestError("This order has been canceled")
        if order.status not in ("PENDING", "PENDING_PAYMENT"):
            raise BadRequestError("This order has already been paid")

        if order.total_amount < MIN_AMOUNT:
            raise AmountTooLowError(f"Payment amount must be at least {MIN_AMOUNT} Toman")
        amount = int(round(order.total_amount))

        description = f"Payment for order {order.order_number}"
        log.info("Initiating ZarinPal payment request for order %s", order.order_number)
        data = self.gateway.request(amount, description, user.get("email", ""), user.get("phone") or "")
        code = data.get("Status")
        if code != 100 or not data.get("Authority"):
            reason = gateway_error(code)
            log.error("ZarinPal payment request failed for order %s: status %s (%s)", order.order_number, code, reason)
            raise GatewayRejectedError(code, reason)

        authority = str(data["Authority"])
        txn = Transaction(
            user_id=user_id,
            order_id=order.id,
            amount=amount,
            authority=authority,
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        create_document(self.db, "transaction", txn)
        self.orders.mark_pending_payment(order.id)
        log.info("Payment requested for order %s, authority %s", order.order_number, authority)
        return PaymentRequestResult(redirect_url=self.gateway.start_pay_url(authority), authority=authority)

    def _find(self, authority: str) -> dict:
        if not authority:
            raise BadRequestError("Transaction authority is required")
        doc = self.collection.find_one({"authority": authority})
        if not doc:
            raise TransactionNotFoundError()
        return doc

    def _settled(self, doc: dict) -> VerificationResult:
        status = doc.get("status")
        error = None
        if status != "SUCCESS":
            error = doc.get("fail_reason") or (EXPIRED_REASON if status == "EXPIRED" else UNKNOWN_ERROR)
        return VerificationResult(
            success=status == "SUCCESS",
            ref_id=doc.get("ref_id"),
            error=error,
            transaction_id=str(doc["_id"]),
            order_id=doc.get("order_id"),
            already_settled=True,
        )

    def _claim(self, doc: dict, update: dict) -> bool:
        result = self.collection.update_one(
            {"_id": doc["_id"], "status": "PENDING"},
            {"$set": {**update, "updated_at": utcnow()}},
        )
        return result.modified_count == 1

    def verify_payment(self, authority: str, amount: Optional[int] = None) -> VerificationResult:
        doc = self._find(authority)
        if doc["status"] != "PENDING":
            log.info("Transaction %s already settled as %s", doc["_id"], doc["status"])
            return self._settled(doc)

        log.info("Verifying ZarinPal payment for authority %s", authority)
        data = self.gateway.verify(authority, amount or doc["amount"])
        code = data.get("Status")
        ref_id = data.get("RefID")
        ref_id = str(ref_id) if ref_id not in (None, "", 0) else None
        now = utcnow()
        txn_id = str(doc["_id"])

        if code in SUCCESS_CODES:
            update = {"status": "SUCCESS", "verified_at": now}
            if ref_id is not None:
                update["ref_id"] = ref_id
            if not self._claim(doc, update):
                return self._settled(self.collection.find_one({"_id": doc["_id"]}))
            if doc.get("order_id"):
                details = PaymentDetails(method="ZARINPAL", transaction_id=txn_id, ref_id=ref_id, paid_at=now)
                if not self.orders.mark_paid(doc["order_id"], details):
                    log.warning(
                        "Transaction %s verified but order %s was no longer awaiting payment",
                        txn_id,
                        doc["order_id"],
                    )
            log.info("Payment verified for transaction %s, ref id %s", txn_id, ref_id)
            return VerificationResult(
                success=True, ref_id=ref_id, code=code, transaction_id=txn_id, order_id=doc.get("order_id")
            )

        reason = gateway_error(code)
        if not self._claim(doc, {"status": "FAILED", "fail_reason": reason, "verified_at": now}):
            return self._settled(self.collection.find_one({"_id": doc["_id"]}))
        log.warning("Payment verification failed for transaction %s: status %s (%s)", txn_id, code, reason)
        return VerificationResult(
            success=False, error=reason, code=code, transaction_id=txn_id, order_id=doc.get("order_id")
        )

    def cancel_payment(self, authority: str) -> VerificationResult:
        doc = self._find(authority)
        if doc["status"] != "PENDING" or not self._claim(doc, {"status": "FAILED", "fail_reason": CANCELLED_BY_USER}):
            return self._settled(self.collection.find_one({"_id": doc["_id"]}))
        log.info("Payment cancelled by user for transaction %s", doc["_id"])
        return VerificationResult(
            success=False, error=CANCELLED_BY_USER, transaction_id=str(doc["_id"]), order_id=doc.get("order_id")
        )

    def find_expired_transactions(self, threshold_minutes: int = 30) -> list:
        cutoff = mongo_time(utcnow() - timedelta(minutes=threshold_minutes))
        docs = self.collection.find({"status": "PENDING", "created_at": {"$lt": cutoff}}).sort("created_at", 1)
        return [Transaction.model_validate(serialize(doc)) for doc in docs]

    def expire_stale_transactions(self, threshold_minutes: Optional[int] = None) -> int:
        threshold = threshold_minutes or self.settings.transaction_expiry_minutes
        expired = 0
        for txn in self.find_expired_transactions(threshold):
            result = self.collection.update_one(
                {"_id": oid(txn.id), "status": "PENDING"},
                {"$set": {"status": "EXPIRED", "fail_reason": EXPIRED_REASON, "updated_at": utcnow()}},
            )
            expired += result.modified_count
        if expired:
            log.info("Expired %d stale transactions older than %d minutes", expired, threshold)
        return expired

    def payment_status(self, authority: str, user: dict) -> dict:
        doc = self._find(authority)
        if doc["user_id"] != str(user["_id"]) and not user.get("is_admin"):
            raise PermissionDeniedError("You do not have permission to view this transaction")
        return self._with_order(doc)

    def user_transactions(self, user_id: str, pagination: Pagination) -> dict:
        result = paginate_results(self.collection, {"user_id": user_id}, pagination)
        result["docs"] = [self._with_order(doc) for doc in result["docs"]]
        return result

    def _with_order(self, doc: dict) -> dict:
        order = self.db["order"].find_one({"_id": oid(doc["order_id"])}) if doc.get("order_id") else None
        return {**Transaction.model_validate(serialize(doc)).model_dump(), "order": _order_summary(order)}

    def all_transactions(
        self,
        pagination: Pagination,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> dict:
        query = {}
        if status:
            query["status"] = status
        created = {}
        if start_date:
            created["$gte"] = _day_start(start_date)
        if end_date:
            created["$lt"] = _day_start(end_date + timedelta(days=1))
        if created:
            query["created_at"] = created

        result = paginate_results(self.collection, query, pagination)
        docs = []
        for doc in result["docs"]:
            user = self.db["user"].find_one({"_id": oid(doc["user_id"])}, {"username": 1, "email": 1, "phone": 1})
            item = self._with_order(doc)
            item["user"] = (
                {"id": doc["user_id"], "username": user.get("username"), "email": user.get("email"), "phone": user.get("phone")}
                if user
                else None
            )
            docs.append(item)
        result["docs"] = docs

        totals = list(
            self.collection.aggregate([
                {"$match": {"status": "SUCCESS"}},
                {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
            ])
        )
        result["summary"] = {
            "total_successful": self.collection.count_documents({"status": "SUCCESS"}),
            "total_failed": self.collection.count_documents({"status": "FAILED"}),
            "total_pending": self.collection.count_documents({"status": "PENDING"}),
            "total_amount": totals[0]["total"] if totals else 0,
        }
        return result
