"""
SQLAlchemy ORM models for the Fulfillment service.

Defines the database schema for orders and for the rows the dispatch
subsystem reads or adjusts (products, coupons, customers, staff, settings).
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from .database import Base


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    """Order status, in fulfillment order."""
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CancelledBy(str, Enum):
    DRIVER = "driver"
    INVENTORY = "inventory"


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"


class Order(Base):
    """
    Order model representing a customer order.

    Attributes:
        id (str): Primary key, order UUID
        customer_name (str): Name the order was placed under
        phone (str): Customer phone, key of the customer ledger
        address (str): Delivery address
        total (Decimal): Amount due after discounts and delivery fee
        status (str): One of OrderStatus values
        driver_id (str): Staff id of the assigned driver (optional)
        coupon_id (str): Applied coupon (optional)
        points_used (int): Loyalty points redeemed on this order
        points_earned (int): Loyalty points credited on delivery
        points_discount (Decimal): Currency value of the redeemed points
        verification_hash (str): Hash of the delivery PIN (optional)
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    customer_name = Column(String(255), nullable=False)
    reference_code = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=False, index=True)
    address = Column(String(500), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=True)
    delivery_fee = Column(Numeric(10, 2), nullable=True)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(50), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = Column(String(20), nullable=True)
    driver_id = Column(String, nullable=True, index=True)
    coupon_id = Column(String, nullable=True, index=True)
    coupon_discount = Column(Numeric(10, 2), nullable=True, default=0)
    points_used = Column(Integer, nullable=True, default=0)
    points_earned = Column(Integer, nullable=True, default=0)
    points_discount = Column(Numeric(10, 2), nullable=True, default=0)
    verification_hash = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", lazy="selectin", order_by="OrderItem.id")
    cancellation = relationship("OrderCancellation", lazy="selectin", uselist=False)


class OrderItem(Base):
    """Order line: product, quantity and the unit price at ordering time."""
    __tablename__ = "order_items"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    quantity = Column(Numeric(10, 2), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)


class OrderCancellation(Base):
    """One row per cancelled order."""
    __tablename__ = "order_cancellation"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    reason = Column(Text, nullable=False)
    cancelled_by = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "status_changed", "driver_assigned", "cancelled")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        actor_id (str): Staff member who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    actor_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String(255), nullable=False)
    stock = Column(Numeric(10, 2), nullable=False, default=0)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    value = Column(Numeric(10, 2), nullable=False)
    remaining_uses = Column(Integer, nullable=False, default=0)


class Customer(Base):
    """Customer loyalty ledger, keyed by phone number."""
    __tablename__ = "customers"

    phone = Column(String(20), primary_key=True)
    name = Column(String(255), nullable=True)
    points = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(10, 2), nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)


class StaffMember(Base):
    __tablename__ = "staff_members"

    id = Column(String, primary_key=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False)


class StoreSettings(Base):
    """
    Store-wide settings row.

    points_system is a JSON object {"active": bool, "value": number,
    "redemptionValue": number}; "value" is the amount of currency spent per
    earned point.
    """
    __tablename__ = "store_settings"

    id = Column(String, primary_key=True)
    points_system = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Attachment(Base):
    """File uploaded to FileHub and linked to a target row (e.g. a cancellation)."""
    __tablename__ = "attachments"

    id = Column(String, primary_key=True)
    filename = Column(String(255), nullable=False)
    target_id = Column(String, nullable=False, index=True)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
