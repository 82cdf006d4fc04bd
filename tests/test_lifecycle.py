import asyncio
from decimal import Decimal

import pytest

from fulfillment import models, schemas
from fulfillment.errors import BadRequestError, NotFoundError
from fulfillment.lifecycle import CompensationScope, points_earned_for
from fulfillment.models import CancelledBy, OrderStatus

from .conftest import get_customer, get_order, get_stock


def change(lifecycle, order_id, status, cancellation=None):
    return asyncio.run(lifecycle.change_status(order_id, status, cancellation))


@pytest.mark.parametrize(
    "status, scope",
    [
        (OrderStatus.PENDING, CompensationScope.UNRESERVED),
        (OrderStatus.PROCESSING, CompensationScope.UNRESERVED),
        (OrderStatus.READY, CompensationScope.RESERVED),
        (OrderStatus.OUT_FOR_DELIVERY, CompensationScope.RESERVED),
        (OrderStatus.DELIVERED, CompensationScope.DELIVERED),
    ],
)
def test_compensation_scope_follows_progress(status, scope):
    assert CompensationScope.for_status(status) == scope


def test_points_earned_floors_spend_after_points_discount():
    order = models.Order(total=Decimal("57.00"), points_discount=Decimal("5.00"))
    assert points_earned_for(order, Decimal("10")) == 5
    assert points_earned_for(order, None) == 0
    assert points_earned_for(models.Order(total=Decimal("5"), points_discount=Decimal("5")), Decimal("10")) == 0


def test_unknown_order(lifecycle, seed):
    with pytest.raises(NotFoundError):
        change(lifecycle, "missing", OrderStatus.READY)


def test_same_status_is_a_no_op(lifecycle, store, broker, notifier, make_order, db):
    order_id = make_order(status=OrderStatus.READY)

    result = change(lifecycle, order_id, OrderStatus.READY)

    assert result.order.status == OrderStatus.READY
    assert store.get_order_events(order_id) == []
    assert broker.idle_orders == []
    assert notifier.sent == []
    assert get_stock(db, "p1") == Decimal("10")


def test_plain_forward_transition_is_logged(lifecycle, store, make_order):
    order_id = make_order()

    result = change(lifecycle, order_id, OrderStatus.PROCESSING)

    assert result.order.status == OrderStatus.PROCESSING
    events = store.get_order_events(order_id)
    assert [(e.event_type, e.old_value, e.new_value) for e in events] == [
        ("status_changed", "pending", "processing")
    ]


def test_backward_transition_is_rejected(lifecycle, make_order, db):
    order_id = make_order(status=OrderStatus.OUT_FOR_DELIVERY, driver_id="d1")

    with pytest.raises(BadRequestError) as exc_info:
        change(lifecycle, order_id, OrderStatus.READY)

    assert exc_info.value.issues[0]["path"] == "status"
    assert get_order(db, order_id).status == OrderStatus.OUT_FOR_DELIVERY.value


def test_cancelled_is_terminal(lifecycle, make_order):
    order_id = make_order(status=OrderStatus.CANCELLED)

    with pytest.raises(BadRequestError):
        change(lifecycle, order_id, OrderStatus.PENDING)


def test_ready_goes_to_the_waiting_driver(lifecycle, broker, notifier, make_order, db):
    order_id = make_order(items=(("p1", "2", "15.00"),), total="30.00")
    asyncio.run(broker.join_shift("d1"))

    result = change(lifecycle, order_id, OrderStatus.READY)

    assert result.order.status == OrderStatus.READY
    assert result.order.driver_id == "d1"
    assert "d1" in broker.busy
    assert "d1" not in broker.available
    # Reserved at creation; marking ready does not touch stock
    assert get_stock(db, "p1") == Decimal("10")
    [payload] = notifier.sent_to("d1")
    assert payload["type"] == "order_assigned"
    assert payload["order_id"] == order_id
    assert Decimal(payload["should_take"]) == Decimal("30.00")
    assert payload["customer_address"] == "12 Nile St"
    assert len(payload["items"]) == 1


def test_ready_without_drivers_waits_in_idle_queue(lifecycle, broker, notifier, make_order):
    order_id = make_order()

    result = change(lifecycle, order_id, OrderStatus.READY)

    assert result.order.status == OrderStatus.READY
    assert result.order.driver_id is None
    assert broker.idle_orders == [order_id]
    assert notifier.sent == []


def test_online_paid_order_has_nothing_to_collect(lifecycle, broker, notifier, make_order):
    order_id = make_order(payment_method="online")
    asyncio.run(broker.join_shift("d1"))

    change(lifecycle, order_id, OrderStatus.READY)

    [payload] = notifier.sent_to("d1")
    assert payload["should_take"] is None


def test_ready_with_hand_assigned_driver_notifies_that_driver(lifecycle, broker, notifier, make_order, db):
    order_id = make_order(status=OrderStatus.PROCESSING, driver_id="d2")
    asyncio.run(broker.join_shift("d1"))

    result = change(lifecycle, order_id, OrderStatus.READY)

    assert result.order.driver_id == "d2"
    assert [recipient for recipient, _ in notifier.sent] == ["d2"]
    assert broker.available == ["d1"]


def test_delivery_credits_ledger_and_deducts_stock(lifecycle, make_order, db):
    order_id = make_order(
        status=OrderStatus.OUT_FOR_DELIVERY,
        driver_id="d1",
        items=(("p1", "2", "15.00"), ("p2", "1", "27.00")),
        total="57.00",
        points_used=10,
        points_discount="5.00",
    )

    result = change(lifecycle, order_id, OrderStatus.DELIVERED)

    assert result.order.status == OrderStatus.DELIVERED
    assert result.order.delivered_at is not None
    # floor((57 - 5) / 10)
    assert result.order.points_earned == 5
    customer = get_customer(db)
    assert customer.points == 100 + 5 - 10
    assert customer.total_spent == Decimal("57.00")
    assert customer.total_orders == 1
    assert get_stock(db, "p1") == Decimal("8")
    assert get_stock(db, "p2") == Decimal("4")


def test_delivery_without_points_system_earns_nothing(lifecycle, make_order, db):
    settings = db.get(models.StoreSettings, "s1")
    settings.points_system = {"active": False, "value": 10}
    db.commit()
    order_id = make_order(status=OrderStatus.OUT_FOR_DELIVERY, driver_id="d1")

    result = change(lifecycle, order_id, OrderStatus.DELIVERED)

    assert result.order.points_earned == 0
    assert get_customer(db).points == 100


def test_failed_delivery_leaves_nothing_behind(lifecycle, broker, make_order, db):
    order_id = make_order(
        status=OrderStatus.OUT_FOR_DELIVERY,
        driver_id="d1",
        items=(("p1", "2", "15.00"), ("gone", "1", "15.00")),
    )
    asyncio.run(broker.join_shift("d1"))
    asyncio.run(broker.mark_busy("d1"))

    with pytest.raises(NotFoundError):
        change(lifecycle, order_id, OrderStatus.DELIVERED)

    assert get_order(db, order_id).status == OrderStatus.OUT_FOR_DELIVERY.value
    assert get_stock(db, "p1") == Decimal("10")
    customer = get_customer(db)
    assert customer.points == 100
    assert customer.total_orders == 0
    assert "d1" in broker.busy


def test_cancel_reserved_order_restores_stock_coupon_and_points(lifecycle, broker, make_order, db):
    order_id = make_order(
        status=OrderStatus.READY,
        items=(("p1", "2", "15.00"),),
        coupon_id="c1",
        points_used=20,
    )
    asyncio.run(broker.push_idle_order(order_id))
    details = schemas.CancellationDetails(reason="Out of stock", cancelled_by=CancelledBy.INVENTORY)

    result = change(lifecycle, order_id, OrderStatus.CANCELLED, details)

    assert result.order.status == OrderStatus.CANCELLED
    assert result.order.cancellation.reason == "Out of stock"
    assert result.order.cancellation.cancelled_by == CancelledBy.INVENTORY
    assert result.cancellation_put_url is None
    assert get_stock(db, "p1") == Decimal("12")
    assert db.get(models.Coupon, "c1").remaining_uses == 4
    assert get_customer(db).points == 120
    assert broker.idle_orders == []


def test_cancel_tolerates_deleted_coupon(lifecycle, make_order, db):
    order_id = make_order(status=OrderStatus.READY, coupon_id="deleted-coupon")

    result = change(lifecycle, order_id, OrderStatus.CANCELLED)

    assert result.order.status == OrderStatus.CANCELLED
    assert get_stock(db, "p1") == Decimal("12")


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.PROCESSING])
def test_cancel_unreserved_order_touches_no_inventory(lifecycle, make_order, db, status):
    order_id = make_order(status=status, coupon_id="c1", points_used=20)

    change(lifecycle, order_id, OrderStatus.CANCELLED)

    assert get_stock(db, "p1") == Decimal("10")
    assert db.get(models.Coupon, "c1").remaining_uses == 3
    assert get_customer(db).points == 100


def test_cancel_after_delivery_nets_ledger_to_zero(lifecycle, make_order, db):
    order_id = make_order(
        status=OrderStatus.OUT_FOR_DELIVERY,
        driver_id="d1",
        total="57.00",
        points_used=10,
        points_discount="5.00",
    )
    change(lifecycle, order_id, OrderStatus.DELIVERED)

    change(lifecycle, order_id, OrderStatus.CANCELLED)

    customer = get_customer(db)
    assert customer.points == 100
    assert customer.total_spent == Decimal("0")
    assert customer.total_orders == 0


def test_cancel_with_evidence_returns_upload_url(lifecycle, broker, attachments, make_order):
    order_id = make_order()
    details = schemas.CancellationDetails(reason="Damaged", attach_with_file_extension="jpg")

    result = change(lifecycle, order_id, OrderStatus.CANCELLED, details)

    [ticket] = attachments.tickets
    assert result.cancellation_put_url == ticket.upload_url
    assert broker.uploads[ticket.filename] == result.order.cancellation.id


def test_cancel_out_for_delivery_frees_the_driver(lifecycle, broker, make_order):
    order_id = make_order(status=OrderStatus.OUT_FOR_DELIVERY, driver_id="d1")
    asyncio.run(broker.join_shift("d1"))
    asyncio.run(broker.mark_busy("d1"))

    change(lifecycle, order_id, OrderStatus.CANCELLED)

    assert "d1" not in broker.busy
    assert broker.available == ["d1"]


def test_delivery_hands_the_freed_driver_an_idle_order(lifecycle, dispatch, broker, notifier, make_order, db):
    delivering = make_order(status=OrderStatus.OUT_FOR_DELIVERY, driver_id="d1")
    waiting = make_order(status=OrderStatus.PROCESSING)
    asyncio.run(broker.join_shift("d1"))
    asyncio.run(broker.mark_busy("d1"))
    asyncio.run(dispatch.mark_ready(waiting))
    assert broker.idle_orders == [waiting]

    change(lifecycle, delivering, OrderStatus.DELIVERED)

    assert get_order(db, waiting).driver_id == "d1"
    assert broker.idle_orders == []
    assert "d1" in broker.busy
    assert [payload["order_id"] for payload in notifier.sent_to("d1")] == [waiting]


def test_concurrent_cancels_compensate_once(lifecycle, broker, make_order, db):
    order_id = make_order(status=OrderStatus.READY, coupon_id="c1", points_used=20)
    asyncio.run(broker.push_idle_order(order_id))
    details = schemas.CancellationDetails(reason="Customer left", attach_with_file_extension="jpg")

    async def cancel_twice():
        return await asyncio.gather(
            lifecycle.change_status(order_id, OrderStatus.CANCELLED, details),
            lifecycle.change_status(order_id, OrderStatus.CANCELLED, details),
            return_exceptions=True,
        )

    results = asyncio.run(cancel_twice())

    changed = [r for r in results if isinstance(r, schemas.StatusChange)]
    refused = [r for r in results if isinstance(r, BadRequestError)]
    assert len(changed) == 1
    assert len(refused) == 1
    assert get_order(db, order_id).status == OrderStatus.CANCELLED.value
    assert get_stock(db, "p1") == Decimal("12")
    assert db.get(models.Coupon, "c1").remaining_uses == 4
    assert get_customer(db).points == 120
    # Only the winning cancellation gets its evidence indexed
    assert list(broker.uploads.values()) == [changed[0].order.cancellation.id]


def test_concurrent_delivery_and_cancel_apply_one_outcome(lifecycle, broker, make_order, db):
    order_id = make_order(status=OrderStatus.OUT_FOR_DELIVERY, driver_id="d1")
    asyncio.run(broker.join_shift("d1"))
    asyncio.run(broker.mark_busy("d1"))
    details = schemas.CancellationDetails(
        reason="Customer unreachable", cancelled_by=CancelledBy.DRIVER, attach_with_file_extension="jpg"
    )

    async def deliver_and_cancel():
        return await asyncio.gather(
            lifecycle.change_status(order_id, OrderStatus.CANCELLED, details),
            lifecycle.change_status(order_id, OrderStatus.DELIVERED),
            return_exceptions=True,
        )

    cancelled, delivered = asyncio.run(deliver_and_cancel())

    # The cancel waits on its upload ticket, so the delivery commits first
    assert isinstance(cancelled, BadRequestError)
    assert delivered.order.status == OrderStatus.DELIVERED
    order = get_order(db, order_id)
    assert order.status == OrderStatus.DELIVERED.value
    assert order.cancellation is None
    assert get_stock(db, "p1") == Decimal("8")
    customer = get_customer(db)
    assert customer.points == 100 + 3
    assert customer.total_spent == Decimal("30.00")
    assert customer.total_orders == 1
    assert broker.available == ["d1"]
    assert broker.busy == set()
