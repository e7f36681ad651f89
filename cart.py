"""
Cart aggregator: one cart document per user, mutated through the ``Cart``
model methods and written back in full.

Writes are guarded by the document's ``version`` field. A save only lands if
nobody else saved the cart since it was read; otherwise the whole
read-modify-write is replayed against the fresh document.
"""

import logging
from typing import Callable, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, serialize, utcnow
from errors import BadRequestError, ConflictError, NotFoundError
from schemas import Cart

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class CartService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db["cart"]

    def find(self, user_id: str) -> Optional[Cart]:
        doc = self.collection.find_one({"user_id": user_id})
        return Cart.model_validate(serialize(doc)) if doc else None

    def get_or_create(self, user_id: str) -> Cart:
        cart = self.find(user_id)
        if cart:
            return cart
        cart = Cart(user_id=user_id)
        try:
            cart.id = create_document(self.db, "cart", cart)
        except DuplicateKeyError:
            # another request created it first
            return self.find(user_id)
        log.info("New cart created for user %s", user_id)
        return cart

    def save(self, cart: Cart) -> bool:
        """Writes the cart if its version is unchanged. Returns False on a lost race."""
        data = cart.model_dump(exclude={"id", "version"})
        data["updated_at"] = utcnow()
        result = self.collection.update_one(
            {"_id": oid(cart.id), "version": cart.version},
            {"$set": data, "$inc": {"version": 1}},
        )
        if result.matched_count == 0:
            return False
        cart.version += 1
        return True

    def _mutate(self, user_id: str, mutation: Callable[[Cart], bool], create: bool = False) -> Cart:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            cart = self.get_or_create(user_id) if create else self.find(user_id)
            if cart is None:
                raise NotFoundError("Cart not found")
            if not mutation(cart):
                raise NotFoundError("Item not found in cart")
            if self.save(cart):
                return cart
            log.warning("Cart of user %s changed concurrently, retrying (attempt %d)", user_id, attempt)
        raise ConflictError("Cart is being updated by another request, please retry")

    def _product(self, product_id: str) -> dict:
        product = self.db["product"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        return product

    def add(self, user_id: str, product_id: str) -> Cart:
        product = self._product(product_id)
        if not product.get("available", True):
            raise BadRequestError("Product is not available")

        def add_one(cart: Cart) -> bool:
            cart.add_item(product, str(product["_id"]))
            return True

        cart = self._mutate(user_id, add_one, create=True)
        log.info("Product %s added to cart of user %s", product.get("title"), user_id)
        return cart

    def reduce_by_one(self, user_id: str, product_id: str) -> Cart:
        cart = self._mutate(user_id, lambda c: c.reduce_by_one(product_id))
        log.info("Item %s reduced in cart of user %s", product_id, user_id)
        return cart

    def remove(self, user_id: str, product_id: str) -> Cart:
        cart = self._mutate(user_id, lambda c: c.remove_item(product_id))
        log.info("Item %s removed from cart of user %s", product_id, user_id)
        return cart

    def clear(self, user_id: str) -> Cart:
        def empty(cart: Cart) -> bool:
            cart.empty()
            return True

        cart = self._mutate(user_id, empty)
        log.info("Cart cleared for user %s", user_id)
        return cart
