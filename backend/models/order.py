from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class ShipOrderRequest(BaseModel):
    courier_name: str = ""
    tracking_number: str = ""
    estimated_delivery: Optional[datetime] = None


class OrderStatusUpdate(BaseModel):
    status: Literal[
        "pending",
        "confirmed",
        "processing",
        "shipped",
        "delivered",
        "cancelled",
        "refunded",
    ]
    note: Optional[str] = None


class BookShipmentRequest(BaseModel):
    courier_id: Optional[int] = None
    weight_grams: int = Field(500, gt=0)
    length_cm: float = Field(10, gt=0)
    width_cm: float = Field(10, gt=0)
    height_cm: float = Field(10, gt=0)
    schedule_pickup: bool = True


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=20)


class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=10)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=6, max_length=6)


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    coupon_code: Optional[str] = None
