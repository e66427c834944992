"""
Pydantic schemas shared by the ledger, validator, writer and HTTP layer.

Product and Order mirror the documents kept in the "products" and "orders"
collections. Line items are accepted with the camelCase names the storefront
sends (productId, lineTotal) as well as their snake_case field names.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from groupbuy.errors import Reason

OrderStatus = Literal["created", "pending_payment", "fulfilled", "cancelled"]


# --- Catalogue ---
class Variant(BaseModel):
    name: str
    stock: int = Field(ge=0)


class Product(BaseModel):
    product_id: str
    shop_id: str
    name: str
    price: float = Field(ge=0)
    original_price: Optional[float] = Field(None, ge=0, description="Display only")
    total_stock: int = Field(0, ge=0)
    variants: List[Variant] = Field(default_factory=list)
    target_amount: Optional[int] = Field(None, ge=0, description="Group-buy threshold")
    current_amount: int = Field(0, ge=0, description="Quantity sold so far")
    is_deleted: bool = False

    @model_validator(mode="after")
    def _total_follows_variants(self):
        if self.variants:
            self.total_stock = sum(v.stock for v in self.variants)
        return self

    def find_variant(self, name: str) -> Optional[Variant]:
        for v in self.variants:
            if v.name == name:
                return v
        return None

    def available(self, variant: Optional[str] = None) -> int:
        if variant is None:
            return self.total_stock
        v = self.find_variant(variant)
        return v.stock if v else 0

    @property
    def target_reached(self) -> bool:
        return self.target_amount is not None and self.current_amount >= self.target_amount


def describe(name: str, variant: Optional[str] = None) -> str:
    return f"{name} ({variant})" if variant else name


# --- Order input ---
class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    variant: Optional[str] = None
    # checked by the validator so a bad value is reported with its line index
    qty: Any = None
    line_total: Optional[float] = Field(None, alias="lineTotal", description="Client side, never trusted")


class Customer(BaseModel):
    name: str
    phone: str
    address: Optional[str] = None
    shipping: Optional[str] = None
    last5: Optional[str] = Field(None, description="Last five digits of the bank transfer")


class SubmitOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shop_id: str = Field(alias="shopId")
    items: List[LineItem]
    customer: Customer
    coupon_id: Optional[str] = Field(None, alias="couponId")


class StatusUpdate(BaseModel):
    status: OrderStatus


# --- Persisted order ---
class Order(BaseModel):
    order_id: str
    shop_id: str
    customer: Customer
    items: List[LineItem]
    total_amount: float = Field(ge=0)
    coupon_id: Optional[str] = None
    status: OrderStatus = "created"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None


# --- Ledger ---
class Reservation(BaseModel):
    reservation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    product_id: str
    variant: Optional[str] = None
    quantity: int = Field(gt=0)


class ReserveResult(BaseModel):
    status: Literal["reserved", "insufficient_stock", "not_found"]
    reservation: Optional[Reservation] = None
    remaining: int = 0


# --- Validation / commit outcomes ---
class PlanEntry(BaseModel):
    product_id: str
    variant: Optional[str] = None
    quantity: int = Field(gt=0)
    line_index: int
    label: str


class Plan(BaseModel):
    entries: List[PlanEntry]
    total_amount: float


class Outcome(BaseModel):
    reason: Reason
    message: str
    line_index: Optional[int] = None


class Rejected(Outcome):
    """The cart itself cannot be ordered."""


class Failed(Outcome):
    """The cart was valid but the commit did not go through."""

    # False when some reserved stock could not be handed back
    rollback_complete: bool = True


class SubmitResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    order_id: Optional[str] = Field(None, alias="orderId")
    reason: Optional[Reason] = None
    message: Optional[str] = None
    line_index: Optional[int] = Field(None, alias="lineIndex")

    @classmethod
    def success(cls, order_id: str) -> "SubmitResult":
        return cls(status="success", order_id=order_id)

    @classmethod
    def error(cls, outcome: Outcome) -> "SubmitResult":
        return cls(status="error", reason=outcome.reason, message=outcome.message,
                   line_index=outcome.line_index)
