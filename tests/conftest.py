# tests/conftest.py
"""
Pytest configuration and fixtures shared by the service and API tests.

The environment is pointed at a throwaway SQLite file before anything from
``storefront`` is imported, because Config reads it at import time.
"""

import os
import tempfile
from datetime import timedelta
from uuid import uuid4

_TEST_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'storefront.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_TEST_DIR, "uploads")
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["FREE_SHIPPING_THRESHOLD"] = "0"
os.environ["SHIPPING_RATE"] = "0.15"
os.environ["TAX_RATE"] = "0.16"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.database import Base
from storefront.models import AppRole, DiscountType, FlashSale, Product, UserRole, Voucher
from storefront.observability.metrics import reset_metrics
from storefront.services.auth_service import AuthService
from storefront.services.notification_service import NotificationService
from storefront.services.order_service import (
    CashOnDelivery,
    CustomerContact,
    MobileMoneyPayment,
    OrderService,
)
from storefront.services.pricing_service import CartLine
from storefront.time_utils import utcnow

MPESA_MESSAGE = (
    "QGH7K2LM9P Confirmed. Ksh13,100.00 sent to STOREFRONT 0700000000 "
    "on 5/6/24 at 10:15 AM. New M-PESA balance is Ksh2,000.00."
)


@pytest.fixture
def db_session():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def _clean_process_state():
    reset_metrics()
    NotificationService()._notifications.clear()
    yield


def _register(db_session, prefix: str):
    suffix = uuid4().hex[:8]
    return AuthService(db_session).register(
        username=f"{prefix}_{suffix}",
        email=f"{prefix}_{suffix}@example.com",
        password="password123",
        display_name=prefix.title(),
    )


@pytest.fixture
def customer(db_session):
    return _register(db_session, "customer")


@pytest.fixture
def other_customer(db_session):
    return _register(db_session, "other")


@pytest.fixture
def admin_user(db_session):
    user = _register(db_session, "admin")
    db_session.add(UserRole(userID=user.userID, role=AppRole.ADMIN))
    db_session.commit()
    return user


@pytest.fixture
def make_product(db_session):
    def _make(name="Kikoy Wrap", price=10_000, original_price=None, in_stock=True):
        product = Product(
            name=name,
            description="Handwoven cotton",
            category="apparel",
            price=price,
            original_price=original_price,
            in_stock=in_stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def make_flash_sale(db_session):
    def _make(product, sale_price=8_000, quantity_limit=None, sold_quantity=0, active=True, hours=4):
        now = utcnow()
        sale = FlashSale(
            productID=product.productID,
            original_price=product.price,
            sale_price=sale_price,
            discount_percentage=FlashSale.derive_discount_percentage(product.price, sale_price),
            start_date=now - timedelta(hours=1),
            end_date=now + timedelta(hours=hours),
            quantity_limit=quantity_limit,
            sold_quantity=sold_quantity,
            active=active,
        )
        db_session.add(sale)
        db_session.commit()
        return sale

    return _make


@pytest.fixture
def make_voucher(db_session):
    def _make(
        code="KARIBU10",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        minimum_purchase_amount=5_000,
        max_uses=None,
        used_count=0,
        active=True,
        start_date=None,
        end_date=None,
    ):
        voucher = Voucher(
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            minimum_purchase_amount=minimum_purchase_amount,
            max_uses=max_uses,
            used_count=used_count,
            active=active,
            start_date=start_date,
            end_date=end_date,
        )
        db_session.add(voucher)
        db_session.commit()
        return voucher

    return _make


@pytest.fixture
def contact():
    return CustomerContact(name="Amina Otieno", email="amina@example.com", phone="0712345678")


@pytest.fixture
def place_order(db_session, contact):
    """Submit an order through OrderService; mobile money unless ``cash=True``."""

    def _place(user, product, quantity=1, flash_sale=None, voucher_code=None, cash=False, message=MPESA_MESSAGE):
        unit_price = flash_sale.sale_price if flash_sale is not None else product.price
        line = CartLine(
            product_id=product.productID,
            quantity=quantity,
            unit_price=unit_price,
            name=product.name,
            flash_sale_id=flash_sale.flashSaleID if flash_sale is not None else None,
        )
        payment = CashOnDelivery() if cash else MobileMoneyPayment(message=message)
        return OrderService(db_session).submit_order(
            user.userID,
            [line],
            contact,
            payment,
            shipping_address="Moi Avenue 12, Nairobi",
            voucher_code=voucher_code,
        )

    return _place
