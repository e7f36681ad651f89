"""
Order placement and order lifecycle.

Checkout turns the caller's cart into an order holding a copy of its items and
totals, then empties the cart. The order insert and the cart clear are two
writes; if the clear does not land the order is removed again, so callers see
both or neither.
"""

import logging
import os
from typing import List, Optional, Tuple

from pymongo.database import Database

from cart import CartService
from database import create_document, oid, serialize, utcnow
from errors import (
    BadRequestError,
    ConflictError,
    EmptyCartError,
    InvalidStatusTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from schemas import ORDER_STATUSES, Order, PaymentDetails

log = logging.getLogger(__name__)

TERMINAL_STATUSES = ("DELIVERED", "CANCELED")
PAYABLE_STATUSES = ("PENDING", "PENDING_PAYMENT")


def new_order_number() -> str:
    return "ORD-" + os.urandom(4).hex().upper()


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == "CANCELED":
        return True
    return ORDER_STATUSES.index(new) > ORDER_STATUSES.index(current)


class OrderService:
    def __init__(self, db: Database, carts: CartService):
        self.db = db
        self.collection = db["order"]
        self.carts = carts

    def place_order(
        self,
        user: dict,
        address: str,
        payment_method: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> Order:
        user_id = str(user["_id"])
        cart = self.carts.find(user_id)
        if cart is None or not cart.items:
            raise EmptyCartError()
        if not address or not address.strip():
            raise BadRequestError("Address is required")

        order = Order(
            user_id=user_id,
            order_number=new_order_number(),
            cart=cart.snapshot(),
            address=address.strip(),
            payment_method=payment_method,
            payment_id=payment_id,
        )
        order.id = create_document(self.db, "order", order)

        try:
            cleared = self.carts.save(cart.empty())
        except Exception:
            self.collection.delete_one({"_id": oid(order.id)})
            log.exception("Clearing cart of user %s failed, order %s rolled back", user_id, order.order_number)
            raise
        if not cleared:
            self.collection.delete_one({"_id": oid(order.id)})
            log.warning("Cart of user %s changed during checkout, order %s rolled back", user_id, order.order_number)
            raise ConflictError("Your cart changed while placing the order, please review it and try again")

        log.info("Order %s placed by user %s for %s", order.order_number, user_id, order.total_amount)
        return self.get(order.id)

    def get(self, order_id: str) -> Order:
        doc = self.collection.find_one({"_id": oid(order_id)})
        if not doc:
            raise NotFoundError("Order not found")
        return Order.model_validate(serialize(doc))

    def get_for_user(self, order_id: str, user: dict) -> Order:
        order = self.get(order_id)
        if order.user_id != str(user["_id"]) and not user.get("is_admin"):
            raise PermissionDeniedError("You do not have permission to view this order")
        return order

    def list_for_user(self, user_id: str) -> List[Order]:
        docs = self.collection.find({"user_id": user_id}).sort("created_at", -1)
        return [Order.model_validate(serialize(doc)) for doc in docs]

    def list_all(self) -> List[dict]:
        orders = []
        owners = {}
        for doc in self.collection.find({}).sort("created_at", -1):
            order = Order.model_validate(serialize(doc))
            if order.user_id not in owners:
                owner = self.db["user"].find_one({"_id": oid(order.user_id)}, {"username": 1, "email": 1})
                owners[order.user_id] = (
                    {"id": order.user_id, "username": owner.get("username"), "email": owner.get("email")}
                    if owner
                    else None
                )
            orders.append({**order.model_dump(), "user": owners[order.user_id]})
        return orders

    def update_status(self, order_id: str, status: str) -> Tuple[Order, bool]:
        """Moves the order forward. Returns the order and whether anything changed."""
        if status not in ORDER_STATUSES:
            raise BadRequestError(f"Invalid order status: {status}")
        order = self.get(order_id)
        if order.status == status:
            return order, False
        if not can_transition(order.status, status):
            raise InvalidStatusTransitionError(f"Cannot change order status from {order.status} to {status}")

        update = {"status": status, "updated_at": utcnow()}
        if status == "DELIVERED":
            update["delivered"] = True
        result = self.collection.update_one({"_id": oid(order_id), "status": order.status}, {"$set": update})
        if result.matched_count == 0:
            raise ConflictError("Order was updated by another request, please retry")
        log.info("Order %s status changed %s -> %s", order.order_number, order.status, status)
        return self.get(order_id), True

    def mark_delivered(self, order_id: str) -> Tuple[Order, bool]:
        return self.update_status(order_id, "DELIVERED")

    def mark_pending_payment(self, order_id: str) -> bool:
        result = self.collection.update_one(
            {"_id": oid(order_id), "status": "PENDING"},
            {"$set": {"status": "PENDING_PAYMENT", "updated_at": utcnow()}},
        )
        return result.modified_count == 1

    def mark_paid(self, order_id: str, details: PaymentDetails) -> bool:
        """Sets the order PAID once. A second call for an already paid order is a no-op."""
        result = self.collection.update_one(
            {"_id": oid(order_id), "status": {"$in": list(PAYABLE_STATUSES)}},
            {"$set": {"status": "PAID", "payment_details": details.model_dump(), "updated_at": utcnow()}},
        )
        if result.modified_count == 1:
            log.info("Order %s marked as paid", order_id)
            return True
        return False
