from datetime import timedelta

import pytest

from storefront.errors import AccessDeniedError, CapacityError, NotFoundError, ValidationError
from storefront.models import DiscountType, VoucherUsage
from storefront.services.voucher_service import VoucherService
from storefront.time_utils import utcnow


def test_resolve_normalizes_code(db_session, make_voucher):
    make_voucher(code="KARIBU10")

    voucher = VoucherService(db_session).resolve("  karibu10 ", subtotal=10_000)

    assert voucher.code == "KARIBU10"


def test_unknown_code_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        VoucherService(db_session).resolve("NOPE", subtotal=10_000)


def test_minimum_purchase_is_enforced(db_session, make_voucher):
    make_voucher(minimum_purchase_amount=20_000)

    with pytest.raises(ValidationError):
        VoucherService(db_session).resolve("KARIBU10", subtotal=10_000)


def test_exhausted_voucher_raises_capacity_error(db_session, make_voucher):
    make_voucher(max_uses=3, used_count=3)

    with pytest.raises(CapacityError):
        VoucherService(db_session).resolve("KARIBU10", subtotal=10_000)


def test_inactive_and_out_of_window_vouchers_are_rejected(db_session, make_voucher):
    now = utcnow()
    make_voucher(code="OFF", active=False)
    make_voucher(code="LATER", start_date=now + timedelta(days=1))
    make_voucher(code="GONE", end_date=now - timedelta(days=1))
    service = VoucherService(db_session)

    for code in ("OFF", "LATER", "GONE"):
        with pytest.raises(ValidationError):
            service.resolve(code, subtotal=10_000, now=now)


def test_create_voucher_requires_admin(db_session, customer):
    with pytest.raises(AccessDeniedError):
        VoucherService(db_session).create_voucher(customer.userID, "NEW", DiscountType.PERCENTAGE, 5)


def test_create_voucher_validates_and_rejects_duplicates(db_session, admin_user):
    service = VoucherService(db_session)

    voucher = service.create_voucher(admin_user.userID, "welcome", "fixed_amount", 500, max_uses=10)
    assert voucher.code == "WELCOME"
    assert voucher.used_count == 0

    with pytest.raises(ValidationError):
        service.create_voucher(admin_user.userID, "WELCOME", "fixed_amount", 500)
    with pytest.raises(ValidationError):
        service.create_voucher(admin_user.userID, "HUGE", "percentage", 150)
    with pytest.raises(ValidationError):
        service.create_voucher(admin_user.userID, "ODD", "bogus", 10)


def test_order_redeems_voucher_once(db_session, customer, product, make_voucher, place_order):
    voucher = make_voucher(max_uses=1)

    order = place_order(customer, product, voucher_code="KARIBU10")

    db_session.refresh(voucher)
    assert voucher.used_count == 1
    assert order.voucher_discount == 1_000
    assert order.total_amount == 12_100
    usage = db_session.query(VoucherUsage).filter_by(orderID=order.orderID).one()
    assert usage.discount_amount == 1_000

    with pytest.raises(CapacityError):
        place_order(customer, product, voucher_code="KARIBU10")


def test_set_active_toggles_voucher(db_session, admin_user, make_voucher):
    voucher = make_voucher()

    VoucherService(db_session).set_active(admin_user.userID, voucher.voucherID, False)

    db_session.refresh(voucher)
    assert voucher.active is False
