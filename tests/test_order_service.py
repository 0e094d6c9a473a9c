import pytest
from sqlalchemy import update

from storefront.errors import (
    AccessDeniedError,
    AlreadyProcessedError,
    AuthenticationError,
    CapacityError,
    NotFoundError,
    ValidationError,
)
from storefront.models import (
    InvalidTransitionError,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    ShippingAddress,
    Voucher,
    VoucherUsage,
)
from storefront.observability.metrics import get_counter_value
from storefront.services.notification_service import NotificationService
from storefront.services.order_service import (
    CashOnDelivery,
    CustomerContact,
    MobileMoneyPayment,
    OrderService,
    payment_choice_from_payload,
    transition_order,
)
from storefront.services.pricing_service import CartLine
from storefront.services.voucher_service import VoucherService


def _line(product, quantity=1, unit_price=None):
    return CartLine(product.productID, quantity, unit_price or product.price, product.name)


def test_mobile_money_order_starts_pending_with_payment_record(db_session, customer, product, place_order):
    order = place_order(customer, product, quantity=1)

    assert OrderStatus(order.status) == OrderStatus.PENDING
    assert PaymentMethod(order.payment_method) == PaymentMethod.MOBILE_MONEY
    assert order.subtotal == 10_000
    assert order.total_amount == 13_100
    assert order.reconciles()

    payments = db_session.query(PaymentRecord).filter_by(orderID=order.orderID).all()
    assert len(payments) == 1
    assert PaymentStatus(payments[0].status) == PaymentStatus.PENDING
    assert payments[0].mpesa_code == "QGH7K2LM9P"
    assert payments[0].amount == order.total_amount
    assert get_counter_value("orders_submitted_total", {"payment_method": "mpesa"}) == 1


def test_cash_order_goes_straight_to_processing(db_session, customer, product, make_flash_sale, place_order):
    sale = make_flash_sale(product, quantity_limit=5)

    order = place_order(customer, product, quantity=2, flash_sale=sale, cash=True)

    assert OrderStatus(order.status) == OrderStatus.PROCESSING
    assert db_session.query(PaymentRecord).filter_by(orderID=order.orderID).count() == 0
    db_session.refresh(sale)
    assert sale.sold_quantity == 2


def test_mobile_money_requires_message():
    with pytest.raises(ValidationError):
        MobileMoneyPayment(message="   ")
    with pytest.raises(ValidationError):
        payment_choice_from_payload("paypal")
    assert isinstance(payment_choice_from_payload("cash"), CashOnDelivery)


def test_submit_requires_signed_in_user(db_session, product, contact):
    with pytest.raises(AuthenticationError) as excinfo:
        OrderService(db_session).submit_order(None, [_line(product)], contact, CashOnDelivery(), "Nairobi")
    assert isinstance(excinfo.value, ValidationError)


def test_submit_rejects_empty_cart_and_bad_lines(db_session, customer, product, make_product, contact):
    service = OrderService(db_session)
    kwargs = {"shipping_address": "Nairobi"}

    with pytest.raises(ValidationError):
        service.submit_order(customer.userID, [], contact, CashOnDelivery(), **kwargs)
    with pytest.raises(ValidationError):
        service.submit_order(customer.userID, [_line(product, quantity=0)], contact, CashOnDelivery(), **kwargs)
    with pytest.raises(NotFoundError):
        missing = CartLine(9_999, 1, 100, "Ghost")
        service.submit_order(customer.userID, [missing], contact, CashOnDelivery(), **kwargs)

    sold_out = make_product(name="Sold out", in_stock=False)
    with pytest.raises(ValidationError):
        service.submit_order(customer.userID, [_line(sold_out)], contact, CashOnDelivery(), **kwargs)

    assert db_session.query(Order).count() == 0


def test_submit_requires_contact_and_address(db_session, customer, product, contact):
    service = OrderService(db_session)

    with pytest.raises(ValidationError):
        service.submit_order(
            customer.userID, [_line(product)], CustomerContact(name="", email="x@example.com"), CashOnDelivery(), "Nairobi"
        )
    with pytest.raises(ValidationError):
        service.submit_order(customer.userID, [_line(product)], contact, CashOnDelivery(), shipping_address="  ")


def test_saved_shipping_address_is_rendered(db_session, customer, other_customer, product, contact):
    address = ShippingAddress(
        userID=customer.userID,
        name="Amina Otieno",
        address_line_1="Moi Avenue 12",
        city="Nairobi",
        county="Nairobi",
    )
    db_session.add(address)
    db_session.commit()
    service = OrderService(db_session)

    order = service.submit_order(
        customer.userID, [_line(product)], contact, CashOnDelivery(), shipping_address_id=address.shippingAddressID
    )
    assert order.shippingAddressID == address.shippingAddressID
    assert "Moi Avenue 12" in order.shipping_address

    with pytest.raises(NotFoundError):
        service.submit_order(
            other_customer.userID, [_line(product)], contact, CashOnDelivery(),
            shipping_address_id=address.shippingAddressID,
        )


def test_flash_sale_precheck_blocks_oversized_cart(db_session, customer, product, make_flash_sale, place_order):
    sale = make_flash_sale(product, quantity_limit=5, sold_quantity=4)

    with pytest.raises(CapacityError):
        place_order(customer, product, quantity=2, flash_sale=sale)

    assert db_session.query(Order).count() == 0


def test_failed_voucher_leaves_no_order(db_session, customer, product, make_voucher, place_order):
    make_voucher(minimum_purchase_amount=50_000)

    with pytest.raises(ValidationError):
        place_order(customer, product, voucher_code="KARIBU10")

    assert db_session.query(Order).count() == 0


def test_voucher_exhausted_at_redeem_rolls_back_order(monkeypatch, db_session, customer, product, make_voucher, place_order):
    voucher = make_voucher(max_uses=3, used_count=2)
    resolve = VoucherService.resolve

    def resolve_then_exhaust(self, code, subtotal, now):
        resolved = resolve(self, code, subtotal, now)
        # Another checkout takes the last use between the check and the redemption.
        self.db.execute(
            update(Voucher).where(Voucher.voucherID == resolved.voucherID).values(used_count=Voucher.max_uses)
        )
        return resolved

    monkeypatch.setattr(VoucherService, "resolve", resolve_then_exhaust)

    with pytest.raises(CapacityError):
        place_order(customer, product, voucher_code="KARIBU10")

    assert db_session.query(Order).count() == 0
    assert db_session.query(VoucherUsage).count() == 0
    assert db_session.query(PaymentRecord).count() == 0
    db_session.refresh(voucher)
    assert voucher.used_count == 2


def test_cancel_pending_order_then_cancel_again(db_session, customer, product, place_order):
    order = place_order(customer, product)
    service = OrderService(db_session)

    cancelled = service.cancel_order(order.orderID, customer.userID)
    assert OrderStatus(cancelled.status) == OrderStatus.CANCELLED

    with pytest.raises(AlreadyProcessedError):
        service.cancel_order(order.orderID, customer.userID)


def test_cannot_cancel_someone_elses_or_processing_order(db_session, customer, other_customer, product, place_order):
    pending = place_order(customer, product)
    cash = place_order(customer, product, cash=True)
    service = OrderService(db_session)

    with pytest.raises(NotFoundError):
        service.cancel_order(pending.orderID, other_customer.userID)
    with pytest.raises(AlreadyProcessedError):
        service.cancel_order(cash.orderID, customer.userID)


def test_fulfilment_status_updates(db_session, admin_user, customer, product, place_order):
    order = place_order(customer, product, cash=True)
    service = OrderService(db_session)

    service.update_status(order.orderID, admin_user.userID, "shipped")
    delivered = service.update_status(order.orderID, admin_user.userID, OrderStatus.DELIVERED)
    assert OrderStatus(delivered.status) == OrderStatus.DELIVERED

    with pytest.raises(ValidationError):
        service.update_status(order.orderID, admin_user.userID, "processing")
    with pytest.raises(AccessDeniedError):
        service.update_status(order.orderID, customer.userID, "shipped")


def test_pending_mobile_money_order_needs_payment_review(db_session, admin_user, customer, product, place_order):
    order = place_order(customer, product)

    with pytest.raises(ValidationError):
        OrderService(db_session).update_status(order.orderID, admin_user.userID, "processing")


def test_status_changes_notify_customer(db_session, customer, product, place_order):
    order = place_order(customer, product)
    OrderService(db_session).cancel_order(order.orderID, customer.userID)

    notifications = NotificationService().get_notifications(customer.userID)
    assert notifications[0]["reference_id"] == order.orderID
    assert "Cancelled" in notifications[0]["title"]


def test_list_user_orders_only_returns_own(db_session, customer, other_customer, product, place_order):
    place_order(customer, product)
    place_order(other_customer, product)

    orders = OrderService(db_session).list_user_orders(customer.userID)
    assert [o.userID for o in orders] == [customer.userID]

    with pytest.raises(ValidationError):
        OrderService(db_session).list_orders("lost")


def test_transition_outside_table_is_rejected(db_session, customer, product, place_order):
    order = place_order(customer, product)

    with pytest.raises(InvalidTransitionError):
        transition_order(db_session, order.orderID, OrderStatus.PENDING, OrderStatus.DELIVERED)

    assert transition_order(db_session, order.orderID, OrderStatus.PROCESSING, OrderStatus.SHIPPED) is False
    db_session.rollback()
    db_session.refresh(order)
    assert OrderStatus(order.status) == OrderStatus.PENDING
