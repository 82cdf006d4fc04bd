"""
Fulfillment use cases called by the API layer.

Each use case checks its preconditions (who may act, in which status) and
then delegates to OrderLifecycle and DispatchEngine.
"""
import logging
import os
from typing import Optional

from . import schemas
from .broker import DispatchBroker
from .clients.filehub_client import AttachmentStore
from .crud import OrderStore
from .dispatch import DispatchEngine
from .errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
)
from .lifecycle import OrderLifecycle
from .models import CancelledBy, OrderStatus
from .notifier import DriverNotifier
from .validators import verify_code_and_hash

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "5"))
DELIVERY_ATTEMPT_WINDOW = int(os.getenv("DELIVERY_ATTEMPT_WINDOW", "60"))  # seconds

DRIVER_ROLE = "driver"


class FulfillmentCoordinator:
    def __init__(
        self,
        store: OrderStore,
        broker: DispatchBroker,
        notifier: DriverNotifier,
        attachments: AttachmentStore,
    ):
        self.store = store
        self.broker = broker
        self.attachments = attachments
        self.dispatch = DispatchEngine(store, broker, notifier)
        self.lifecycle = OrderLifecycle(store, self.dispatch, broker, attachments)

    def _get_order(self, order_id: str):
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("orderId", "Order not found")
        return order

    def _get_driver_order(self, order_id: str, driver_id: str):
        order = self._get_order(order_id)
        if order.driver_id != driver_id:
            raise UnauthorizedError("orderId", "Order is not assigned to this driver")
        return order

    async def get_order(self, order_id: str) -> schemas.Order:
        """Order with a signed URL for its cancellation evidence, if any was uploaded."""
        order = schemas.Order.model_validate(self._get_order(order_id))
        if order.cancellation is not None:
            attachment = self.store.get_attachment_for(order.cancellation.id)
            if attachment is not None:
                order.cancellation.image_url = await self.attachments.get_signed_url(attachment.filename)
        return order

    def get_order_timeline(self, order_id: str):
        self._get_order(order_id)
        return self.store.get_order_events(order_id)

    async def change_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        cancellation: Optional[schemas.CancellationDetails] = None,
        actor_id: Optional[str] = None,
    ) -> schemas.StatusChange:
        return await self.lifecycle.change_status(order_id, status, cancellation, actor_id=actor_id)

    async def mark_ready(self, order_id: str, actor_id: Optional[str] = None) -> schemas.StatusChange:
        return await self.lifecycle.change_status(order_id, OrderStatus.READY, actor_id=actor_id)

    async def join_shift(self, driver_id: str) -> schemas.DriverOrders:
        return await self.dispatch.join_shift(driver_id)

    async def leave_shift(self, driver_id: str) -> None:
        await self.dispatch.leave_shift(driver_id)

    async def take_order(self, order_id: str, driver_id: str) -> schemas.Order:
        """
        Driver accepts a ready order assigned to them.

        Raises:
            NotFoundError: order missing
            UnauthorizedError: order assigned to another driver
            BadRequestError: order is not ready
        """
        order = self._get_driver_order(order_id, driver_id)
        if order.status != OrderStatus.READY.value:
            raise BadRequestError(
                "status",
                f"Order cannot be taken. Current status: {order.status}. Only ready orders can be taken.",
            )
        order = await self.dispatch.take_order(order_id, driver_id)
        return schemas.Order.model_validate(order)

    async def mark_order_delivered(self, order_id: str, driver_id: str, verification_code: str) -> schemas.Order:
        """
        Driver hands the order over, proven by the customer's verification code.

        Attempts are counted per order; once the ceiling is reached within the
        window every further attempt is refused, right or wrong.

        Raises:
            TooManyRequestsError: attempt ceiling reached
            NotFoundError: order missing
            UnauthorizedError: order assigned to another driver
            BadRequestError: order not out for delivery, or issued no code
            ForbiddenError: wrong code
        """
        attempts = await self.broker.register_attempt(f"order:attempt:{order_id}", DELIVERY_ATTEMPT_WINDOW)
        if attempts > MAX_DELIVERY_ATTEMPTS:
            logger.warning(f"Delivery verification attempts exceeded for order {order_id}")
            raise TooManyRequestsError("orderId", "Too many attempts")

        order = self._get_driver_order(order_id, driver_id)
        if order.status != OrderStatus.OUT_FOR_DELIVERY.value:
            raise BadRequestError(
                "status",
                f"Order cannot be delivered. Current status: {order.status}. Only orders out for delivery can be delivered.",
            )
        if not order.verification_hash:
            raise BadRequestError("verificationCode", "Order does not have a verification hash")
        if not verify_code_and_hash(verification_code, order.verification_hash):
            raise ForbiddenError("verificationCode", "Invalid verification code")

        change = await self.lifecycle.change_status(order_id, OrderStatus.DELIVERED, actor_id=driver_id)
        return change.order

    async def cancel_order_by_driver(
        self,
        order_id: str,
        driver_id: str,
        reason: str,
        attach_with_file_extension: Optional[str] = None,
    ) -> schemas.StatusChange:
        order = self._get_driver_order(order_id, driver_id)
        if order.status != OrderStatus.OUT_FOR_DELIVERY.value:
            raise BadRequestError(
                "status",
                f"Order cannot be cancelled. Current status: {order.status}. "
                f"Only orders out for delivery can be cancelled by a driver.",
            )
        details = schemas.CancellationDetails(
            reason=reason,
            cancelled_by=CancelledBy.DRIVER,
            attach_with_file_extension=attach_with_file_extension,
        )
        return await self.lifecycle.change_status(order_id, OrderStatus.CANCELLED, details, actor_id=driver_id)

    async def cancel_order_by_inventory(
        self,
        order_id: str,
        reason: str,
        attach_with_file_extension: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> schemas.StatusChange:
        order = self._get_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise BadRequestError(
                "status",
                f"Order cannot be cancelled by inventory. Current status: {order.status}. "
                f"Only pending orders can be cancelled by inventory.",
            )
        details = schemas.CancellationDetails(
            reason=reason,
            cancelled_by=CancelledBy.INVENTORY,
            attach_with_file_extension=attach_with_file_extension,
        )
        return await self.lifecycle.change_status(order_id, OrderStatus.CANCELLED, details, actor_id=actor_id)

    async def assign_order_to_driver_manually(
        self, order_id: str, driver_id: str, actor_id: Optional[str] = None
    ) -> schemas.Order:
        """
        Admin override: give an unassigned order to a specific driver.

        A ready order is taken off the idle queue and its driver is marked
        busy; an order that is not ready yet marks the driver busy once it
        becomes ready.

        Raises:
            NotFoundError: order or staff member missing
            BadRequestError: order already assigned, or staff member is not a driver
        """
        order = self._get_order(order_id)
        if order.driver_id:
            raise BadRequestError("orderId", "Order already assigned to a driver")

        staff_member = self.store.get_staff_member(driver_id)
        if staff_member is None:
            raise NotFoundError("driverId", "Staff member not found")
        if staff_member.role != DRIVER_ROLE:
            raise BadRequestError("driverId", "Staff member is not a driver")

        with self.store.transaction():
            assigned = self.store.assign_driver(order_id, driver_id, from_status=OrderStatus(order.status))
            if assigned:
                self.store.log_event(
                    order_id,
                    "driver_assigned",
                    f"Assigned to driver {driver_id} manually",
                    new_value=driver_id,
                    actor_id=actor_id,
                )
        if not assigned:
            raise BadRequestError("orderId", "Order already assigned to a driver")

        order = self.store.get_order(order_id)
        if order.status == OrderStatus.READY.value:
            # The driver now holds a ready order; keep it out of the available queue
            await self.broker.discard_idle_order(order_id)
            await self.broker.mark_busy(driver_id)
            await self.dispatch.notify_ready(order, driver_id)
        logger.info(f"Order {order_id} manually assigned to driver {driver_id}")
        return schemas.Order.model_validate(order)

    async def check_driver_status(self, driver_id: str) -> schemas.DriverStatus:
        """
        Whether a driver is on shift and busy, with their current orders.

        A driver on shift with no active order is offered the oldest idle ready order.
        A driver still marked busy without any active order (its release was
        lost, e.g. to a crash after the commit) is released first.
        """
        if not await self.broker.is_on_shift(driver_id):
            return schemas.DriverStatus(is_shifted=False, is_busy=False)
        active_orders, _ = self.store.get_ready_orders_for_driver(driver_id)
        if not active_orders and await self.broker.is_busy(driver_id):
            logger.warning(f"Driver {driver_id} is busy without an active order, releasing")
            await self.dispatch.release_driver(driver_id)
        driver_orders = await self.dispatch.driver_orders(driver_id, pull_idle=True)
        return schemas.DriverStatus(
            is_shifted=True,
            is_busy=await self.broker.is_busy(driver_id),
            ready_orders=driver_orders.orders,
            counts=driver_orders.counts,
        )

    async def record_uploaded_attachment(self, event: schemas.UploadCompletedEvent) -> dict:
        """
        Link a file FileHub finished receiving to the row that requested it.

        Plain uploads are indexed by object path, tus uploads by upload key.

        Returns:
            {"success": bool, "message": str (on failure)}
        """
        if event.event == "upload_completed":
            key, filename, size = event.object_path, event.object_path, event.size
        elif event.event == "tus_completed":
            upload = event.upload or {}
            key, filename, size = upload.get("uploadKey"), upload.get("filePath") or "", upload.get("uploadLength") or 0
        else:
            logger.warning(f"Unknown FileHub event type: {event.event}")
            return {"success": False, "message": "Unknown event type"}

        if not key or size is None:
            return {"success": False, "message": f"Invalid {event.event} webhook data"}

        target_id = await self.broker.resolve_upload(key)
        if not target_id:
            logger.warning(f"Target not found for upload '{key}'")
            return {"success": False, "message": "Target not found"}

        with self.store.transaction():
            self.store.save_attachment(filename, target_id, size)
        logger.info(f"Attachment '{filename}' linked to {target_id}")
        return {"success": True}
