"""
Order status state machine.

Every transition runs its side effects inside one store transaction together
with the status update, so either all of them are persisted or none:

    ready      hand the order to a driver (DispatchEngine.mark_ready)
    delivered  credit loyalty points, spend and order count; deduct stock
    cancelled  undo what the order's progress had already applied

Driver state is changed after the commit.
"""
import logging
import math
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional

from . import models, schemas
from .broker import DispatchBroker
from .clients.filehub_client import AttachmentStore
from .crud import OrderStore
from .dispatch import DispatchEngine
from .errors import BadRequestError, NotFoundError
from .models import OrderStatus
from .validators import validate_order_status_transition

logger = logging.getLogger(__name__)

CANCELLATION_UPLOAD_TTL = 3600 * 24 * 7  # seconds

DRIVER_HELD_STATUSES = (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY)


class CompensationScope(str, Enum):
    """How far an order got before it was cancelled, which decides what to undo."""
    UNRESERVED = "unreserved"
    RESERVED = "reserved"
    DELIVERED = "delivered"

    @classmethod
    def for_status(cls, status: OrderStatus) -> "CompensationScope":
        if status == OrderStatus.DELIVERED:
            return cls.DELIVERED
        if status in (OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY):
            return cls.RESERVED
        return cls.UNRESERVED


def points_earned_for(order: models.Order, points_per_currency_unit: Optional[Decimal]) -> int:
    """floor((total - points discount) / currency per point); 0 without a points system."""
    if not points_per_currency_unit:
        return 0
    spent = Decimal(order.total) - Decimal(order.points_discount or 0)
    if spent <= 0:
        return 0
    return math.floor(spent / points_per_currency_unit)


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        dispatch: DispatchEngine,
        broker: DispatchBroker,
        attachments: AttachmentStore,
    ):
        self.store = store
        self.dispatch = dispatch
        self.broker = broker
        self.attachments = attachments

    async def change_status(
        self,
        order_id: str,
        target: OrderStatus,
        cancellation: Optional[schemas.CancellationDetails] = None,
        actor_id: Optional[str] = None,
    ) -> schemas.StatusChange:
        """
        Move an order to ``target`` and apply the transition's side effects.

        Args:
            order_id: Order to change
            target: Requested status
            cancellation: Reason, canceller and optional evidence extension (cancel only)
            actor_id: Staff member performing the change, recorded on the timeline

        Returns:
            StatusChange with the updated order and, when evidence was
            requested, the URL to upload it to

        Raises:
            NotFoundError: order missing
            BadRequestError: transition not allowed from the current status, or
                the order was changed by a concurrent request
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("orderId", "Order not found")

        current = OrderStatus(order.status)
        if target == current:
            return schemas.StatusChange(order=schemas.Order.model_validate(order))

        is_valid, error_message = validate_order_status_transition(current, target)
        if not is_valid:
            raise BadRequestError("status", error_message)

        driver_id = order.driver_id
        cancellation_put_url = None

        if target == OrderStatus.READY:
            await self._mark_ready(order, actor_id)
        elif target == OrderStatus.DELIVERED:
            self._deliver(order, current, actor_id)
        elif target == OrderStatus.CANCELLED:
            cancellation_put_url = await self._cancel(order, current, cancellation, actor_id)
        else:
            with self.store.transaction():
                self._transition(order_id, current, target)
                self._log_status(order_id, current, target, actor_id)

        logger.info(f"Order {order_id} moved from '{current.value}' to '{target.value}'")

        if target in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            if target == OrderStatus.CANCELLED and current == OrderStatus.READY:
                await self.broker.discard_idle_order(order_id)
            if driver_id is not None and current in DRIVER_HELD_STATUSES:
                await self.dispatch.release_driver(driver_id)

        updated = self.store.get_order(order_id)
        return schemas.StatusChange(
            order=schemas.Order.model_validate(updated),
            cancellation_put_url=cancellation_put_url,
        )

    def _transition(self, order_id: str, current: OrderStatus, target: OrderStatus, **fields) -> None:
        # Raising inside the transaction rolls back any side effects already written
        if not self.store.transition_status(order_id, current, target, **fields):
            raise BadRequestError("status", f"Order is no longer '{current.value}'")

    def _log_status(self, order_id: str, old: OrderStatus, new: OrderStatus, actor_id: Optional[str]) -> None:
        self.store.log_event(
            order_id,
            "status_changed",
            f"Status changed from '{old.value}' to '{new.value}'",
            old_value=old.value,
            new_value=new.value,
            actor_id=actor_id,
        )

    async def _mark_ready(self, order: models.Order, actor_id: Optional[str]) -> None:
        if order.driver_id is None:
            await self.dispatch.mark_ready(order.id)
            return

        # Driver assigned by hand before the order was ready
        order_id, driver_id = order.id, order.driver_id
        current = OrderStatus(order.status)
        with self.store.transaction():
            self._transition(order_id, current, OrderStatus.READY)
            self._log_status(order_id, current, OrderStatus.READY, actor_id)
        await self.broker.mark_busy(driver_id)
        await self.dispatch.notify_ready(self.store.get_order(order_id), driver_id)

    def _deliver(self, order: models.Order, current: OrderStatus, actor_id: Optional[str]) -> None:
        points_earned = points_earned_for(order, self.store.get_points_per_currency_unit())
        points_used = order.points_used or 0
        with self.store.transaction():
            self._transition(
                order.id,
                current,
                OrderStatus.DELIVERED,
                delivered_at=models.utcnow(),
                points_earned=points_earned,
            )
            self.store.update_customer_ledger(
                order.phone,
                points_delta=points_earned - points_used,
                total_spent_delta=order.total,
                total_orders_delta=1,
            )
            self.store.update_stock_many((item.product_id, -item.quantity) for item in order.items)
            self._log_status(order.id, current, OrderStatus.DELIVERED, actor_id)

    async def _cancel(
        self,
        order: models.Order,
        current: OrderStatus,
        cancellation: Optional[schemas.CancellationDetails],
        actor_id: Optional[str],
    ) -> Optional[str]:
        details = cancellation or schemas.CancellationDetails()
        scope = CompensationScope.for_status(current)

        upload = None
        if details.attach_with_file_extension:
            upload = await self.attachments.issue_upload_ticket(
                CANCELLATION_UPLOAD_TTL, details.attach_with_file_extension
            )

        with self.store.transaction():
            # Claim the transition first so a concurrent change of the same order
            # fails here, before any compensation is written
            self._transition(order.id, current, OrderStatus.CANCELLED)
            if scope == CompensationScope.RESERVED:
                self._release_reservation(order)
            elif scope == CompensationScope.DELIVERED:
                self._reverse_delivery(order)
            record = self.store.save_cancellation(
                order.id, details.reason, details.cancelled_by, cancellation_id=str(uuid.uuid4())
            )
            self.store.log_event(
                order.id,
                "cancelled",
                f"Cancelled by {details.cancelled_by.value}: {details.reason}" if details.reason
                else f"Cancelled by {details.cancelled_by.value}",
                old_value=current.value,
                new_value=OrderStatus.CANCELLED.value,
                actor_id=actor_id,
            )
            cancellation_id = record.id

        if upload is None:
            return None
        await self.broker.index_upload(upload.filename, cancellation_id, CANCELLATION_UPLOAD_TTL)
        return upload.upload_url

    def _release_reservation(self, order: models.Order) -> None:
        self.store.update_stock_many((item.product_id, item.quantity) for item in order.items)
        if order.coupon_id:
            if not self.store.adjust_coupon_uses(order.coupon_id, 1):
                logger.warning(f"Coupon {order.coupon_id} of order {order.id} no longer exists, not restored")
        if order.points_used:
            self.store.update_customer_ledger(order.phone, points_delta=order.points_used)

    def _reverse_delivery(self, order: models.Order) -> None:
        points_used = order.points_used or 0
        self.store.update_customer_ledger(
            order.phone,
            points_delta=-((order.points_earned or 0) - points_used),
            total_spent_delta=-order.total,
            total_orders_delta=-1,
        )
