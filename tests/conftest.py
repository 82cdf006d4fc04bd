import os
import uuid
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment import models
from fulfillment.coordinator import FulfillmentCoordinator
from fulfillment.crud import OrderStore
from fulfillment.database import Base
from fulfillment.validators import hash_verification_code

from .fakes import FakeAttachmentStore, InMemoryDispatchBroker, RecordingNotifier

VERIFICATION_CODE = "4815162342"
CUSTOMER_PHONE = "01000000001"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db):
    """Two products, a customer, a coupon, points settings and some staff."""
    db.add_all(
        [
            models.Product(id="p1", name="Tomatoes", stock=Decimal("10")),
            models.Product(id="p2", name="Milk", stock=Decimal("5")),
            models.Customer(
                phone=CUSTOMER_PHONE, name="Mona", points=100, total_spent=Decimal("0"), total_orders=0
            ),
            models.Coupon(id="c1", name="WELCOME", value=Decimal("5"), remaining_uses=3),
            models.StoreSettings(id="s1", points_system={"active": True, "value": 10, "redemptionValue": 0.5}),
            models.StaffMember(id="d1", name="Driver One", role="driver"),
            models.StaffMember(id="d2", name="Driver Two", role="driver"),
            models.StaffMember(id="inv1", name="Inventory", role="inventory"),
            models.StaffMember(id="admin1", name="Admin", role="admin"),
        ]
    )
    db.commit()


@pytest.fixture
def make_order(db, seed):
    def _make_order(
        status=models.OrderStatus.PENDING,
        driver_id=None,
        items=(("p1", "2", "15.00"),),
        total="30.00",
        payment_method="cod",
        coupon_id=None,
        points_used=0,
        points_discount="0",
        verification_code=VERIFICATION_CODE,
    ):
        order_id = str(uuid.uuid4())
        order = models.Order(
            id=order_id,
            customer_name="Mona",
            phone=CUSTOMER_PHONE,
            address="12 Nile St",
            total=Decimal(total),
            subtotal=Decimal(total),
            delivery_fee=Decimal("0"),
            status=status.value,
            payment_method=payment_method,
            driver_id=driver_id,
            coupon_id=coupon_id,
            points_used=points_used,
            points_discount=Decimal(points_discount),
            verification_hash=hash_verification_code(verification_code) if verification_code else None,
        )
        db.add(order)
        for product_id, quantity, price in items:
            db.add(
                models.OrderItem(
                    id=str(uuid.uuid4()),
                    order_id=order_id,
                    product_id=product_id,
                    quantity=Decimal(quantity),
                    price=Decimal(price),
                )
            )
        db.commit()
        return order_id

    return _make_order


@pytest.fixture
def store(db):
    return OrderStore(db)


@pytest.fixture
def broker():
    return InMemoryDispatchBroker()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def attachments():
    return FakeAttachmentStore()


@pytest.fixture
def coordinator(store, broker, notifier, attachments):
    return FulfillmentCoordinator(store, broker, notifier, attachments)


@pytest.fixture
def dispatch(coordinator):
    return coordinator.dispatch


@pytest.fixture
def lifecycle(coordinator):
    return coordinator.lifecycle


def get_order(db, order_id):
    db.expire_all()
    return db.get(models.Order, order_id)


def get_stock(db, product_id):
    db.expire_all()
    return db.get(models.Product, product_id).stock


def get_customer(db):
    db.expire_all()
    return db.get(models.Customer, CUSTOMER_PHONE)
