"""
Driver shifts and order-to-driver assignment.

DispatchEngine keeps driver availability in the DispatchBroker and writes
the resulting assignments to the OrderStore. A driver popped from the
available queue is marked busy in the same broker step, so two concurrent
assignments can never receive the same driver.
"""
import logging
from typing import List, Optional

from . import models, schemas
from .broker import DispatchBroker
from .crud import OrderStore
from .errors import BadRequestError, NotFoundError, UnauthorizedError
from .models import OrderStatus, PaymentMethod
from .notifier import DriverNotifier

logger = logging.getLogger(__name__)


def build_ready_order_payload(order: models.Order) -> schemas.ReadyOrderPayload:
    """Message telling a driver about an order waiting for pickup."""
    should_take = order.total if order.payment_method == PaymentMethod.COD.value else None
    return schemas.ReadyOrderPayload(
        order_id=order.id,
        should_take=should_take,
        customer_name=order.customer_name,
        customer_address=order.address,
        total=order.total,
        items=[schemas.OrderItem.model_validate(item) for item in order.items],
    )


class DispatchEngine:
    def __init__(self, store: OrderStore, broker: DispatchBroker, notifier: DriverNotifier):
        self.store = store
        self.broker = broker
        self.notifier = notifier

    async def join_shift(self, driver_id: str) -> schemas.DriverOrders:
        """
        Put a driver on shift.

        Returns the orders the driver already holds, so an interrupted shift
        can resume. A driver with nothing to do is handed the oldest idle
        ready order straight away.
        """
        queued = await self.broker.join_shift(driver_id)
        logger.info(f"Driver {driver_id} joined shift (queued as available: {queued})")
        return await self.driver_orders(driver_id, pull_idle=True)

    async def leave_shift(self, driver_id: str) -> None:
        if not await self.broker.leave_shift(driver_id):
            raise BadRequestError("driverId", "Driver is busy")
        logger.info(f"Driver {driver_id} left shift")

    async def driver_orders(self, driver_id: str, pull_idle: bool = False) -> schemas.DriverOrders:
        """A driver's ready/out-for-delivery orders and status counts, optionally pulling idle work."""
        orders, counts = self.store.get_ready_orders_for_driver(driver_id)
        if not orders and pull_idle:
            order = await self.pull_idle_order(driver_id)
            if order is not None:
                orders, counts = self.store.get_ready_orders_for_driver(driver_id)
        return schemas.DriverOrders(
            orders=[schemas.Order.model_validate(order) for order in orders],
            counts=[schemas.StatusCount(**count) for count in counts],
        )

    async def mark_ready(self, order_id: str) -> Optional[str]:
        """
        Mark an order ready and try to hand it to the oldest available driver.

        Returns:
            The assigned driver id, or None when the order was queued as idle

        Raises:
            NotFoundError: order missing
            BadRequestError: order already has a driver, or was changed concurrently
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("orderId", "Order not found")
        if order.driver_id is not None:
            raise BadRequestError("orderId", "Order is already assigned to a driver")

        previous_status = order.status
        driver_id = await self.broker.pop_available_driver()
        if driver_id is None:
            with self.store.transaction():
                if not self.store.transition_status(order_id, OrderStatus(previous_status), OrderStatus.READY):
                    raise BadRequestError("status", f"Order is no longer '{previous_status}'")
                self._log_ready(order_id, previous_status, None)
            await self.broker.push_idle_order(order_id)
            logger.info(f"No driver available, order {order_id} queued as idle")
            return None

        with self.store.transaction():
            assigned = self.store.assign_driver(
                order_id, driver_id, status=OrderStatus.READY, from_status=OrderStatus(previous_status)
            )
            if assigned:
                self._log_ready(order_id, previous_status, driver_id)
        if not assigned:
            await self.broker.release_driver(driver_id)
            raise BadRequestError("orderId", "Order was assigned or changed by another request")

        logger.info(f"Order {order_id} assigned to driver {driver_id}")
        await self.notify_ready(self.store.get_order(order_id), driver_id)
        return driver_id

    def _log_ready(self, order_id: str, previous_status: str, driver_id: Optional[str]) -> None:
        if previous_status != OrderStatus.READY.value:
            self.store.log_event(
                order_id,
                "status_changed",
                f"Status changed from '{previous_status}' to '{OrderStatus.READY.value}'",
                old_value=previous_status,
                new_value=OrderStatus.READY.value,
            )
        if driver_id is not None:
            self.store.log_event(
                order_id, "driver_assigned", f"Assigned to driver {driver_id}", new_value=driver_id
            )

    async def notify_ready(self, order: models.Order, driver_id: str) -> bool:
        payload = build_ready_order_payload(order)
        return await self.notifier.send(driver_id, payload.model_dump(mode="json"))

    async def take_order(self, order_id: str, driver_id: str) -> models.Order:
        """
        Driver picks up an order assigned to them; it goes out for delivery.

        Raises:
            NotFoundError: order missing
            UnauthorizedError: order assigned to someone else
            BadRequestError: order changed by a concurrent request
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("orderId", "Order not found")
        if order.driver_id != driver_id:
            raise UnauthorizedError("orderId", "Order is not assigned to this driver")

        await self.broker.mark_busy(driver_id)
        previous_status = order.status
        with self.store.transaction():
            if not self.store.transition_status(
                order_id, OrderStatus(previous_status), OrderStatus.OUT_FOR_DELIVERY
            ):
                raise BadRequestError("status", f"Order is no longer '{previous_status}'")
            self.store.log_event(
                order_id,
                "status_changed",
                f"Status changed from '{previous_status}' to '{OrderStatus.OUT_FOR_DELIVERY.value}'",
                old_value=previous_status,
                new_value=OrderStatus.OUT_FOR_DELIVERY.value,
                actor_id=driver_id,
            )
        logger.info(f"Driver {driver_id} took order {order_id}")
        return order

    async def release_driver(self, driver_id: str) -> None:
        """Free a driver after its order ended, then offer idle work to waiting drivers."""
        await self.broker.release_driver(driver_id)
        logger.info(f"Driver {driver_id} released")
        await self.dispatch_idle_orders()

    async def pull_idle_order(self, driver_id: str) -> Optional[models.Order]:
        """
        Give the oldest idle ready order to this driver.

        Idle entries that are no longer assignable (cancelled, assigned by
        hand, gone) are dropped and the next one is tried.
        """
        while True:
            order_id = await self.broker.claim_idle_order(driver_id)
            if order_id is None:
                return None
            order = await self._assign_idle(order_id, driver_id)
            if order is not None:
                return order

    async def dispatch_idle_orders(self) -> List[models.Order]:
        """Pair idle ready orders with available drivers, oldest first on both sides."""
        assigned = []
        while True:
            pair = await self.broker.pair_idle_order()
            if pair is None:
                return assigned
            driver_id, order_id = pair
            order = await self._assign_idle(order_id, driver_id)
            if order is not None:
                assigned.append(order)

    async def _assign_idle(self, order_id: str, driver_id: str) -> Optional[models.Order]:
        order = self.store.get_order(order_id)
        if order is None or order.status != OrderStatus.READY.value or order.driver_id is not None:
            logger.warning(f"Dropping stale idle order {order_id}")
            await self.broker.release_driver(driver_id)
            return None
        with self.store.transaction():
            assigned = self.store.assign_driver(order_id, driver_id, from_status=OrderStatus.READY)
            if assigned:
                self.store.log_event(
                    order_id, "driver_assigned", f"Assigned to driver {driver_id}", new_value=driver_id
                )
        if not assigned:
            await self.broker.release_driver(driver_id)
            return None
        logger.info(f"Idle order {order_id} assigned to driver {driver_id}")
        order = self.store.get_order(order_id)
        await self.notify_ready(order, driver_id)
        return order
