from datetime import datetime, timedelta, timezone

import pytest

from storefront.errors import AccessDeniedError, CapacityError, NotFoundError, ValidationError
from storefront.services.flash_sale_service import FlashSaleService
from storefront.time_utils import utcnow

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "delta,expected",
    [
        (timedelta(days=2, hours=3, minutes=15), "2d 3h 15m"),
        (timedelta(hours=5, minutes=1), "5h 1m"),
        (timedelta(minutes=42, seconds=30), "42m"),
        (timedelta(seconds=0), "Expired"),
        (timedelta(minutes=-5), "Expired"),
    ],
)
def test_time_remaining_labels(delta, expected):
    assert FlashSaleService.time_remaining(NOW + delta, now=NOW) == expected


def test_time_remaining_accepts_naive_end_dates():
    naive_end = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert FlashSaleService.time_remaining(naive_end, now=NOW) == "1h 0m"


def test_create_flash_sale_derives_price_fields(db_session, admin_user, product):
    now = utcnow()
    sale = FlashSaleService(db_session).create_flash_sale(
        admin_user.userID,
        product.productID,
        sale_price=7_500,
        start_date=now,
        end_date=now + timedelta(hours=6),
        quantity_limit=10,
    )

    assert sale.original_price == 10_000
    assert sale.discount_percentage == 25
    assert sale.sold_quantity == 0
    assert sale.get_available_quantity() == 10


def test_create_flash_sale_validation(db_session, admin_user, customer, product, make_flash_sale):
    service = FlashSaleService(db_session)
    now = utcnow()
    window = {"start_date": now, "end_date": now + timedelta(hours=2)}

    with pytest.raises(AccessDeniedError):
        service.create_flash_sale(customer.userID, product.productID, 5_000, **window)
    with pytest.raises(ValidationError):
        service.create_flash_sale(admin_user.userID, product.productID, 10_000, **window)
    with pytest.raises(ValidationError):
        service.create_flash_sale(
            admin_user.userID, product.productID, 5_000, start_date=now, end_date=now - timedelta(hours=1)
        )
    with pytest.raises(NotFoundError):
        service.create_flash_sale(admin_user.userID, 9_999, 5_000, **window)

    make_flash_sale(product)
    with pytest.raises(ValidationError):
        service.create_flash_sale(admin_user.userID, product.productID, 5_000, **window)


def test_advisory_guard(db_session, product, make_flash_sale):
    service = FlashSaleService(db_session)

    unlimited = make_flash_sale(product, quantity_limit=None)
    service.ensure_available(unlimited, 500)

    nearly_gone = make_flash_sale(product, quantity_limit=5, sold_quantity=4)
    service.ensure_available(nearly_gone, 1)
    with pytest.raises(CapacityError):
        service.ensure_available(nearly_gone, 2)

    sold_out = make_flash_sale(product, quantity_limit=5, sold_quantity=5)
    with pytest.raises(CapacityError):
        service.ensure_available(sold_out, 1)


def test_claim_inventory_is_conditional(db_session, product, make_flash_sale):
    sale = make_flash_sale(product, quantity_limit=5, sold_quantity=3)
    service = FlashSaleService(db_session)

    service.claim_inventory(sale.flashSaleID, 2)
    db_session.commit()
    db_session.refresh(sale)
    assert sale.sold_quantity == 5

    with pytest.raises(CapacityError):
        service.claim_inventory(sale.flashSaleID, 1)
    with pytest.raises(NotFoundError):
        service.claim_inventory(9_999, 1)


def test_active_flash_sales_excludes_switched_off_and_expired(db_session, admin_user, make_product, make_flash_sale):
    live = make_flash_sale(make_product(name="Live"))
    make_flash_sale(make_product(name="Off"), active=False)
    expired = make_flash_sale(make_product(name="Expired"))
    expired.end_date = utcnow() - timedelta(minutes=1)
    db_session.commit()
    service = FlashSaleService(db_session)

    assert [sale.flashSaleID for sale in service.get_active_flash_sales()] == [live.flashSaleID]

    service.set_active(admin_user.userID, live.flashSaleID, False)
    assert service.get_active_flash_sales() == []
    assert service.get_active_sale_for_product(live.productID) is None
