"""
Database Schemas for the shop backend

Each Pydantic model correlates to a MongoDB collection. The collection name is the lowercase of the class name.
- User -> "user"
- Product -> "product"
- Category -> "category"
- Cart -> "cart"
- Order -> "order"
- Transaction -> "transaction"

Derived values (order status label, formatted amount) are computed fields: they show up in responses but are never stored.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field, model_validator

ORDER_STATUSES = ("PENDING", "PENDING_PAYMENT", "PAID", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELED")
OrderStatus = Literal["PENDING", "PENDING_PAYMENT", "PAID", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELED"]
TransactionStatus = Literal["PENDING", "SUCCESS", "FAILED", "EXPIRED"]
PaymentMethod = Literal["ZARINPAL", "CASH_ON_DELIVERY", "WALLET"]


def slugify(title: str) -> str:
    slug = re.sub(r"[^\w ]+", "", title.lower())
    return re.sub(r" +", "-", slug.strip())


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, description="Display name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    is_admin: bool = Field(False, description="Is admin user")
    phone: Optional[str] = Field(None, description="Mobile number")
    phone_verified: bool = False
    active: bool = Field(True, description="False once the account is deactivated")
    password_changed_at: Optional[datetime] = None


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    is_admin: bool = False
    phone: Optional[str] = None
    phone_verified: bool = False
    created_at: Optional[datetime] = None


class Category(BaseModel):
    title: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)

    @classmethod
    def build(cls, title: str, slug: Optional[str] = None) -> "Category":
        title = title.strip()
        return cls(title=title, slug=slugify(slug or title))


class Product(BaseModel):
    product_code: str = Field(..., min_length=1, description="Unique product code")
    title: str = Field(..., min_length=1)
    image_path: str = "/images/default-product.jpg"
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: str = Field(..., description="Category id")
    manufacturer: str = Field(..., min_length=1)
    available: bool = True


class CartItem(BaseModel):
    product_id: str
    title: Optional[str] = None
    product_code: Optional[str] = None
    qty: int = Field(0, ge=0)
    unit_price: float = Field(0, ge=0)
    price: float = Field(0, ge=0, description="Line subtotal: qty * unit_price")


class CartSnapshot(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    total_qty: int = 0
    total_cost: float = 0


class Cart(BaseModel):
    id: Optional[str] = None
    user_id: str = Field(..., description="Owner user id")
    items: List[CartItem] = Field(default_factory=list)
    total_qty: int = 0
    total_cost: float = 0
    version: int = 0

    def _index_of(self, product_id: str) -> int:
        for i, item in enumerate(self.items):
            if item.product_id == str(product_id):
                return i
        return -1

    def _recalculate(self) -> None:
        self.total_qty = sum(item.qty for item in self.items)
        self.total_cost = sum(item.price for item in self.items)

    def add_item(self, product: dict, product_id: str) -> "Cart":
        unit_price = float(product["price"])
        idx = self._index_of(product_id)
        if idx >= 0:
            item = self.items[idx]
            item.qty += 1
            item.unit_price = unit_price
            item.price = item.qty * unit_price
        else:
            self.items.append(
                CartItem(
                    product_id=str(product_id),
                    title=product.get("title"),
                    product_code=product.get("product_code"),
                    qty=1,
                    unit_price=unit_price,
                    price=unit_price,
                )
            )
        self._recalculate()
        return self

    def reduce_by_one(self, product_id: str) -> bool:
        idx = self._index_of(product_id)
        if idx < 0:
            return False
        item = self.items[idx]
        item.qty -= 1
        if item.qty <= 0:
            del self.items[idx]
        else:
            item.price = item.qty * item.unit_price
        self._recalculate()
        return True

    def remove_item(self, product_id: str) -> bool:
        idx = self._index_of(product_id)
        if idx < 0:
            return False
        del self.items[idx]
        self._recalculate()
        return True

    def empty(self) -> "Cart":
        self.items = []
        self._recalculate()
        return self

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            items=[item.model_copy() for item in self.items],
            total_qty=self.total_qty,
            total_cost=self.total_cost,
        )


class PaymentDetails(BaseModel):
    method: PaymentMethod = "ZARINPAL"
    transaction_id: str
    ref_id: Optional[str] = None
    paid_at: datetime


class Order(BaseModel):
    id: Optional[str] = None
    user_id: str
    order_number: str
    cart: CartSnapshot
    address: str = Field(..., min_length=1)
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    status: OrderStatus = "PENDING"
    delivered: bool = False
    payment_details: Optional[PaymentDetails] = None
    created_at: Optional[datetime] = None

    @computed_field
    @property
    def status_label(self) -> str:
        return "Delivered" if self.delivered else "Processing"

    @computed_field
    @property
    def total_amount(self) -> float:
        return self.cart.total_cost


class Transaction(BaseModel):
    id: Optional[str] = None
    user_id: str
    order_id: Optional[str] = None
    amount: int = Field(..., ge=1000, description="Amount in Toman")
    authority: Optional[str] = None
    ref_id: Optional[str] = None
    status: TransactionStatus = "PENDING"
    description: str = "Order payment"
    fail_reason: Optional[str] = None
    payment_method: PaymentMethod = "ZARINPAL"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    verified_at: Optional[datetime] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @computed_field
    @property
    def formatted_amount(self) -> str:
        return f"{self.amount:,} Toman"


# Lightweight request models
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=8)
    password2: Optional[str] = None

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password2 is not None and self.password2 != self.password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UpdateProfileRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30)


class UpdatePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)
