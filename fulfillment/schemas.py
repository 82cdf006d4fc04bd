"""
Pydantic schemas for request/response validation in the Fulfillment service.

These schemas define the structure of data passed between the API layer,
the fulfillment use cases and connected driver clients.
"""
from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field

from .models import CancelledBy, OrderStatus


class OrderItem(BaseModel):
    """Schema for an order line item."""
    product_id: str
    quantity: Decimal
    price: Decimal = Field(..., description="Unit price at ordering time")

    class Config:
        from_attributes = True


class OrderCancellation(BaseModel):
    """Schema for an order's cancellation record."""
    id: str
    reason: str
    cancelled_by: Optional[CancelledBy] = None
    created_at: Optional[datetime] = None
    image_url: Optional[str] = None

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        id (str): Order's unique identifier
        status (OrderStatus): Current status
        driver_id (str): Assigned driver, if any
        items (List[OrderItem]): Order line items
        cancellation (OrderCancellation): Present once the order is cancelled
    """
    id: str
    customer_name: str
    phone: str
    address: str
    reference_code: Optional[str] = None
    subtotal: Optional[Decimal] = None
    delivery_fee: Optional[Decimal] = None
    total: Decimal
    status: OrderStatus
    payment_method: Optional[str] = None
    driver_id: Optional[str] = None
    coupon_id: Optional[str] = None
    points_used: Optional[int] = 0
    points_earned: Optional[int] = 0
    points_discount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)
    cancellation: Optional[OrderCancellation] = None

    class Config:
        from_attributes = True


class OrderEvent(BaseModel):
    """Schema for order timeline events."""
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CancellationDetails(BaseModel):
    """Why an order is cancelled, by whom, and whether evidence will be uploaded."""
    reason: str = ""
    cancelled_by: CancelledBy = CancelledBy.INVENTORY
    attach_with_file_extension: Optional[str] = Field(
        None, description="Extension of an evidence image the caller will upload, e.g. 'jpg'"
    )


class StatusChange(BaseModel):
    """Result of a status transition."""
    order: Order
    cancellation_put_url: Optional[str] = None


class ReadyOrderPayload(BaseModel):
    """Message pushed to a driver when a ready order is assigned to them."""
    type: str = "order_assigned"
    order_id: str
    should_take: Optional[Decimal] = Field(
        None, description="Cash the driver must collect; only set for cash on delivery"
    )
    customer_name: str
    customer_address: str
    total: Decimal
    items: List[OrderItem] = Field(default_factory=list)


class StatusCount(BaseModel):
    status: OrderStatus
    count: int


class DriverOrders(BaseModel):
    """A driver's active (ready / out for delivery) orders plus per-status counts."""
    orders: List[Order] = Field(default_factory=list)
    counts: List[StatusCount] = Field(default_factory=list)


class DriverStatus(BaseModel):
    is_shifted: bool
    is_busy: bool
    ready_orders: Optional[List[Order]] = None
    counts: Optional[List[StatusCount]] = None


class UploadTicket(BaseModel):
    """Signed upload slot issued by FileHub."""
    filename: str
    upload_url: str
    expiration_date: Optional[datetime] = None


class UploadCompletedEvent(BaseModel):
    """FileHub webhook body; either a plain upload or a tus upload."""
    event: str
    object_path: Optional[str] = Field(None, alias="objectPath")
    size: Optional[int] = None
    upload: Optional[dict] = None

    class Config:
        populate_by_name = True


# Request bodies

class StatusUpdate(BaseModel):
    status: OrderStatus
    cancellation: Optional[CancellationDetails] = None


class DeliveryConfirmation(BaseModel):
    verification_code: str = Field(..., min_length=1)


class CancellationRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    attach_with_file_extension: Optional[str] = None


class ManualAssignment(BaseModel):
    driver_id: str
