"""
Database operations for the Fulfillment service.

OrderStore wraps a SQLAlchemy session and exposes the reads and writes the
order lifecycle and the dispatch engine need. Write methods only flush; they
are meant to be called inside ``transaction()`` so that a status change and
its stock/coupon/ledger side effects commit or roll back together.
"""
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import uuid

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError
from .models import OrderStatus

# Set up logging
logger = logging.getLogger(__name__)

ACTIVE_DRIVER_STATUSES = [OrderStatus.READY.value, OrderStatus.OUT_FOR_DELIVERY.value]
COUNTED_DRIVER_STATUSES = ACTIVE_DRIVER_STATUSES + [OrderStatus.DELIVERED.value]


class OrderStore:
    """Relational persistence for orders and the rows their transitions touch."""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self):
        """
        Commit everything written inside the block, or roll it all back.

        Usage:
            with store.transaction():
                store.update_stock_many(...)
                store.update_order(...)
        """
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def get_order(self, order_id: str) -> Optional[models.Order]:
        """
        Retrieve a single order by ID.

        Args:
            order_id: ID of the order to retrieve

        Returns:
            Order object or None if not found
        """
        return self.db.query(models.Order).filter(models.Order.id == order_id).first()

    def update_order(self, order_id: str, **fields) -> models.Order:
        """
        Set the given columns on an order.

        Args:
            order_id: ID of the order to update
            **fields: Column values (status, driver_id, delivered_at, points_earned, ...)

        Returns:
            Updated Order object

        Raises:
            NotFoundError: if the order does not exist
        """
        db_order = self.get_order(order_id)
        if db_order is None:
            raise NotFoundError("orderId", "Order not found")
        for key, value in fields.items():
            setattr(db_order, key, value)
        self.db.flush()
        return db_order

    def transition_status(self, order_id: str, current: OrderStatus, target: OrderStatus, **fields) -> bool:
        """
        Move an order from ``current`` to ``target``, setting any extra columns.

        The status check is part of the UPDATE, so of two concurrent
        transitions out of the same status only one matches a row.

        Returns:
            True if the order was still in ``current`` and has been moved
        """
        result = self.db.execute(
            update(models.Order)
            .where(models.Order.id == order_id, models.Order.status == current.value)
            .values(status=target.value, **fields)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount == 1

    def assign_driver(
        self,
        order_id: str,
        driver_id: str,
        status: Optional[OrderStatus] = None,
        from_status: Optional[OrderStatus] = None,
    ) -> bool:
        """
        Assign a driver to an order that has none yet.

        The check and the write are one conditional UPDATE, so two concurrent
        assignments cannot both succeed.

        Args:
            status: New status to set together with the driver
            from_status: Only assign while the order is still in this status

        Returns:
            True if this call assigned the driver, False if the order already
            had one or has left ``from_status``
        """
        values = {"driver_id": driver_id}
        if status is not None:
            values["status"] = status.value
        conditions = [models.Order.id == order_id, models.Order.driver_id.is_(None)]
        if from_status is not None:
            conditions.append(models.Order.status == from_status.value)
        result = self.db.execute(
            update(models.Order)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount == 1

    def update_stock_many(self, deltas: Iterable[Tuple[str, Decimal]]) -> None:
        """
        Apply signed stock deltas, one per (product_id, delta).

        Raises:
            NotFoundError: if a product does not exist
        """
        for product_id, delta in deltas:
            result = self.db.execute(
                update(models.Product)
                .where(models.Product.id == product_id)
                .values(stock=models.Product.stock + delta)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 0:
                raise NotFoundError("productId", f"Product {product_id} not found")
            logger.info(f"Adjusted stock of product '{product_id}' by {delta}")
        self.db.flush()

    def adjust_coupon_uses(self, coupon_id: str, delta: int) -> bool:
        """
        Add a signed delta to a coupon's remaining uses.

        Returns:
            False if the coupon no longer exists
        """
        result = self.db.execute(
            update(models.Coupon)
            .where(models.Coupon.id == coupon_id)
            .values(remaining_uses=models.Coupon.remaining_uses + delta)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount == 1

    def update_customer_ledger(
        self,
        phone: str,
        points_delta: int = 0,
        total_spent_delta: Decimal = Decimal("0"),
        total_orders_delta: int = 0,
    ) -> None:
        """
        Apply signed deltas to a customer's points, total spent and order count.

        Raises:
            NotFoundError: if no customer has this phone number
        """
        result = self.db.execute(
            update(models.Customer)
            .where(models.Customer.phone == phone)
            .values(
                points=models.Customer.points + points_delta,
                total_spent=models.Customer.total_spent + total_spent_delta,
                total_orders=models.Customer.total_orders + total_orders_delta,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise NotFoundError("phone", f"Customer {phone} not found")
        self.db.flush()
        logger.info(
            f"Ledger of customer '{phone}': points {points_delta:+d}, "
            f"spent {total_spent_delta:+}, orders {total_orders_delta:+d}"
        )

    def save_cancellation(
        self,
        order_id: str,
        reason: str,
        cancelled_by: models.CancelledBy,
        cancellation_id: Optional[str] = None,
    ) -> models.OrderCancellation:
        """
        Store the cancellation record of an order.

        An order has at most one record; saving again updates it in place.
        """
        now = models.utcnow()
        record = (
            self.db.query(models.OrderCancellation)
            .filter(models.OrderCancellation.order_id == order_id)
            .first()
        )
        if record is None:
            record = models.OrderCancellation(
                id=cancellation_id or str(uuid.uuid4()),
                order_id=order_id,
                created_at=now,
            )
            self.db.add(record)
        record.reason = reason
        record.cancelled_by = cancelled_by.value
        record.updated_at = now
        self.db.flush()
        return record

    def get_ready_orders_for_driver(self, driver_id: str) -> Tuple[List[models.Order], List[Dict]]:
        """
        Retrieve a driver's ready and out-for-delivery orders, newest first,
        plus per-status counts of their ready/out-for-delivery/delivered orders.
        """
        orders = (
            self.db.query(models.Order)
            .filter(
                models.Order.driver_id == driver_id,
                models.Order.status.in_(ACTIVE_DRIVER_STATUSES),
            )
            .order_by(models.Order.created_at.desc())
            .all()
        )
        rows = (
            self.db.query(models.Order.status, func.count(models.Order.id))
            .filter(
                models.Order.driver_id == driver_id,
                models.Order.status.in_(COUNTED_DRIVER_STATUSES),
            )
            .group_by(models.Order.status)
            .all()
        )
        counts = [{"status": status, "count": count} for status, count in rows]
        return orders, counts

    def get_staff_member(self, staff_id: str) -> Optional[models.StaffMember]:
        return self.db.query(models.StaffMember).filter(models.StaffMember.id == staff_id).first()

    def get_points_per_currency_unit(self) -> Optional[Decimal]:
        """
        Currency amount per earned loyalty point, from the store settings.

        Returns:
            The amount, or None when the points system is missing or inactive
        """
        settings = self.db.query(models.StoreSettings).order_by(models.StoreSettings.created_at.desc()).first()
        if settings is None or not settings.points_system:
            return None
        points_system = settings.points_system
        if not points_system.get("active"):
            return None
        value = points_system.get("value")
        if value is None:
            return None
        value = Decimal(str(value))
        return value if value > 0 else None

    def log_event(
        self,
        order_id: str,
        event_type: str,
        description: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> models.OrderEvent:
        """
        Append an event to the order timeline.

        Args:
            order_id: Order identifier
            event_type: Type of event (e.g., "status_changed", "driver_assigned", "cancelled")
            description: Human-readable description
            old_value: Previous value (optional)
            new_value: New value (optional)
            actor_id: Staff member who triggered the event (optional)
        """
        event = models.OrderEvent(
            order_id=order_id,
            event_type=event_type,
            description=description,
            old_value=old_value,
            new_value=new_value,
            actor_id=actor_id,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def get_order_events(self, order_id: str) -> List[models.OrderEvent]:
        return (
            self.db.query(models.OrderEvent)
            .filter(models.OrderEvent.order_id == order_id)
            .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
            .all()
        )

    def save_attachment(self, filename: str, target_id: str, size: int) -> models.Attachment:
        attachment = models.Attachment(
            id=str(uuid.uuid4()),
            filename=filename,
            target_id=target_id,
            size=size,
        )
        self.db.add(attachment)
        self.db.flush()
        return attachment

    def get_attachment_for(self, target_id: str) -> Optional[models.Attachment]:
        return (
            self.db.query(models.Attachment)
            .filter(models.Attachment.target_id == target_id)
            .order_by(models.Attachment.created_at.desc())
            .first()
        )
