from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Dict, List, Optional, Sequence, Union

import bleach
from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.database import transaction
from storefront.errors import (
    AlreadyProcessedError,
    CapacityError,
    NotFoundError,
    ValidationError,
)
from storefront.models import (
    FlashSale,
    InvalidTransitionError,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    ShippingAddress,
)
from storefront.observability import increment_counter, observe_latency, record_event
from storefront.services.auth_service import AuthService
from storefront.services.flash_sale_service import FlashSaleService
from storefront.services.notification_service import publish_order_status_change
from storefront.services.payment_service import PaymentService
from storefront.services.pricing_service import CartLine, PriceBreakdown, PricingService
from storefront.services.voucher_service import VoucherService
from storefront.time_utils import utcnow


def _clean(value: Optional[str]) -> str:
    return bleach.clean(value or "", tags=[], strip=True).strip()


# ----------------------------------------------------------------------
# Payment method variants
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class MobileMoneyPayment:
    """Off-platform M-Pesa transfer; the pasted confirmation is mandatory."""

    message: str
    phone_number: Optional[str] = None
    method: ClassVar[PaymentMethod] = PaymentMethod.MOBILE_MONEY

    def __post_init__(self) -> None:
        if not _clean(self.message):
            raise ValidationError("Please paste your M-Pesa confirmation message")


@dataclass(frozen=True)
class CashOnDelivery:
    method: ClassVar[PaymentMethod] = PaymentMethod.CASH_ON_DELIVERY


PaymentChoice = Union[MobileMoneyPayment, CashOnDelivery]


def payment_choice_from_payload(
    method: Optional[str],
    message: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> PaymentChoice:
    try:
        kind = PaymentMethod((method or "").strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown payment method: {method}") from exc
    if kind == PaymentMethod.MOBILE_MONEY:
        return MobileMoneyPayment(message=message or "", phone_number=phone_number)
    return CashOnDelivery()


@dataclass(frozen=True)
class CustomerContact:
    name: str
    email: str
    phone: Optional[str] = None

    def validated(self) -> "CustomerContact":
        name = _clean(self.name)
        email = _clean(self.email).lower()
        phone = _clean(self.phone) or None
        if not name:
            raise ValidationError("Customer name is required")
        if not email or "@" not in email:
            raise ValidationError("A valid customer email is required")
        return CustomerContact(name=name, email=email, phone=phone)


def transition_order(
    db: Session,
    order_id: int,
    from_status: OrderStatus,
    to_status: OrderStatus,
    *criteria,
) -> bool:
    """
    Conditional status write: UPDATE ... WHERE status = from_status.

    Returns False when no row matched (wrong state, or someone else won the
    race). Never commits.
    """
    if to_status not in Order.allowed_transitions(from_status):
        raise InvalidTransitionError(f"Invalid order status transition from {from_status} to {to_status}")
    result = db.execute(
        update(Order)
        .where(Order.orderID == order_id, Order.status == from_status, *criteria)
        .values(status=to_status)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


class OrderService:
    """Validates a cart and turns it into an order in one transaction."""

    def __init__(
        self,
        db_session: Session,
        auth_service: Optional[AuthService] = None,
        pricing_service: Optional[PricingService] = None,
        voucher_service: Optional[VoucherService] = None,
        payment_service: Optional[PaymentService] = None,
        flash_sale_service: Optional[FlashSaleService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.auth = auth_service or AuthService(db_session)
        self.voucher_service = voucher_service or VoucherService(db_session, auth_service=self.auth)
        self.pricing = pricing_service or PricingService(voucher_service=self.voucher_service)
        self.payment_service = payment_service or PaymentService(db_session)
        self.flash_sales = flash_sale_service or FlashSaleService(db_session, auth_service=self.auth)

    # ------------------------------------------------------------------
    # Customer flows
    # ------------------------------------------------------------------
    def submit_order(
        self,
        user_id: Optional[int],
        lines: Sequence[CartLine],
        contact: CustomerContact,
        payment: PaymentChoice,
        shipping_address: Optional[str] = None,
        shipping_address_id: Optional[int] = None,
        voucher_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        started = utcnow()
        now = now or started
        user = self.auth.require_user(user_id)

        if not lines:
            raise ValidationError("Your cart is empty")
        if not isinstance(payment, (MobileMoneyPayment, CashOnDelivery)):
            raise ValidationError("A payment method is required")
        contact = contact.validated()
        address_text, address_id = self._resolve_shipping_address(user.userID, shipping_address, shipping_address_id)

        products = self._validate_lines(lines)
        flash_sales = self._validate_flash_sale_lines(lines)

        voucher = None
        if voucher_code and voucher_code.strip():
            voucher = self.voucher_service.resolve(voucher_code, self.pricing.subtotal(lines), now)
        breakdown = self.pricing.quote(lines, voucher)

        initial_status = (
            OrderStatus.PENDING
            if payment.method == PaymentMethod.MOBILE_MONEY
            else OrderStatus.PROCESSING
        )

        with transaction(self.db):
            order = self._build_order(user.userID, contact, payment, address_text, address_id, breakdown, voucher)
            order.status = initial_status
            self.db.add(order)
            for line in lines:
                order.items.append(
                    OrderItem(
                        productID=line.product_id,
                        flashSaleID=line.flash_sale_id,
                        product_name=line.name or products[line.product_id].name,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        line_total=line.line_total,
                    )
                )
            self.db.flush()

            if voucher is not None:
                self.voucher_service.redeem(voucher, order, user.userID, breakdown.voucher_discount)

            if isinstance(payment, MobileMoneyPayment):
                self.payment_service.record_for_order(
                    order,
                    payment.message,
                    amount=order.total_amount,
                    phone_number=payment.phone_number or contact.phone,
                )
            else:
                # No admin confirmation follows a cash order, so its flash-sale
                # units are claimed now with the same conditional increment.
                for flash_sale_id, quantity in flash_sales.items():
                    self.flash_sales.claim_inventory(flash_sale_id, quantity)

        increment_counter(
            "orders_submitted_total",
            labels={"payment_method": payment.method.value},
        )
        observe_latency("order_submission_ms", (utcnow() - started).total_seconds() * 1000)
        record_event(
            "order_submitted",
            {"order_id": order.orderID, "user_id": user.userID, "total": order.total_amount},
        )
        self.logger.info(
            "Order %s submitted",
            order.orderID,
            extra={
                "user_id": user.userID,
                "status": initial_status.value,
                "total_amount": order.total_amount,
                "voucher": voucher.code if voucher else None,
            },
        )
        publish_order_status_change(order.orderID, user.userID, "", initial_status.value)
        return order

    def cancel_order(self, order_id: int, user_id: Optional[int]) -> Order:
        """Customer self-service cancel; only allowed while the order is pending."""
        user = self.auth.require_user(user_id)
        order = self.get_order(order_id)
        if order is None or order.userID != user.userID:
            raise NotFoundError(f"Order {order_id} not found")

        with transaction(self.db):
            changed = transition_order(
                self.db,
                order_id,
                OrderStatus.PENDING,
                OrderStatus.CANCELLED,
                Order.userID == user.userID,
            )
            if not changed:
                self.db.refresh(order)
                raise AlreadyProcessedError(
                    f"Order {order_id} is {OrderStatus(order.status).value} and can no longer be cancelled"
                )

        self.db.refresh(order)
        increment_counter("orders_cancelled_total", labels={"by": "customer"})
        self.logger.info("Order %s cancelled by customer", order_id, extra={"user_id": user.userID})
        publish_order_status_change(order_id, user.userID, OrderStatus.PENDING.value, OrderStatus.CANCELLED.value)
        return order

    # ------------------------------------------------------------------
    # Admin flows
    # ------------------------------------------------------------------
    def update_status(self, order_id: int, admin_id: Optional[int], new_status: OrderStatus | str) -> Order:
        """Fulfilment moves (processing -> shipped -> delivered)."""
        self.auth.require_admin(admin_id)
        try:
            target = OrderStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown order status: {new_status}") from exc

        order = self.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        current = OrderStatus(order.status)
        if (
            current == OrderStatus.PENDING
            and PaymentMethod(order.payment_method) == PaymentMethod.MOBILE_MONEY
        ):
            raise ValidationError("Mobile-money orders leave pending only through payment review")
        if not order.can_transition(target):
            raise ValidationError(f"Cannot move order {order_id} from {current.value} to {target.value}")

        with transaction(self.db):
            if not transition_order(self.db, order_id, current, target):
                raise AlreadyProcessedError(f"Order {order_id} changed while updating; reload and retry")

        self.db.refresh(order)
        self.logger.info("Order %s moved %s -> %s", order_id, current.value, target.value, extra={"admin_id": admin_id})
        publish_order_status_change(order_id, order.userID, current.value, target.value)
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_order(self, order_id: int) -> Optional[Order]:
        return self.db.query(Order).filter_by(orderID=order_id).first()

    def list_user_orders(self, user_id: int, limit: Optional[int] = None) -> List[Order]:
        query = self.db.query(Order).filter_by(userID=user_id).order_by(Order.created_at.desc(), Order.orderID.desc())
        return query.limit(limit or Config.ORDER_HISTORY_PAGE_SIZE).all()

    def list_orders(self, status: Optional[OrderStatus | str] = None) -> List[Order]:
        query = self.db.query(Order)
        if status:
            try:
                query = query.filter(Order.status == OrderStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown order status: {status}") from exc
        return query.order_by(Order.created_at.desc(), Order.orderID.desc()).all()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validate_lines(self, lines: Sequence[CartLine]) -> Dict[int, Product]:
        product_ids = {line.product_id for line in lines}
        products = {
            product.productID: product
            for product in self.db.query(Product).filter(Product.productID.in_(product_ids)).all()
        }
        for line in lines:
            if not isinstance(line.quantity, int) or line.quantity < 1:
                raise ValidationError("Quantity must be at least 1")
            if line.quantity > Config.MAX_LINE_QUANTITY:
                raise ValidationError(f"Quantity cannot exceed {Config.MAX_LINE_QUANTITY}")
            if line.unit_price <= 0:
                raise ValidationError("Unit price must be positive")
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError(f"Product {line.product_id} not found")
            if not product.in_stock:
                raise ValidationError(f"{product.name} is out of stock")
        return products

    def _validate_flash_sale_lines(self, lines: Sequence[CartLine]) -> Dict[int, int]:
        requested: Dict[int, int] = defaultdict(int)
        for line in lines:
            if line.flash_sale_id is None:
                continue
            flash_sale: Optional[FlashSale] = self.flash_sales.get_flash_sale_by_id(line.flash_sale_id)
            if flash_sale is None or flash_sale.productID != line.product_id:
                raise NotFoundError(f"Flash sale {line.flash_sale_id} not found for product {line.product_id}")
            if not flash_sale.active:
                raise ValidationError("This flash sale has ended")
            requested[line.flash_sale_id] += line.quantity

            available = flash_sale.get_available_quantity()
            if available is not None and requested[line.flash_sale_id] > available:
                raise CapacityError(
                    f"Only {max(available, 0)} unit(s) left in this flash sale"
                )
        return dict(requested)

    def _resolve_shipping_address(
        self,
        user_id: int,
        shipping_address: Optional[str],
        shipping_address_id: Optional[int],
    ) -> tuple:
        if shipping_address_id is not None:
            address = (
                self.db.query(ShippingAddress)
                .filter_by(shippingAddressID=shipping_address_id, userID=user_id)
                .first()
            )
            if address is None:
                raise NotFoundError(f"Shipping address {shipping_address_id} not found")
            return address.as_text(), address.shippingAddressID

        text = _clean(shipping_address)
        if not text:
            raise ValidationError("Shipping address is required")
        return text, None

    @staticmethod
    def _build_order(
        user_id: int,
        contact: CustomerContact,
        payment: PaymentChoice,
        address_text: str,
        address_id: Optional[int],
        breakdown: PriceBreakdown,
        voucher,
    ) -> Order:
        return Order(
            userID=user_id,
            customer_name=contact.name,
            customer_email=contact.email,
            customer_phone=contact.phone,
            shipping_address=address_text,
            shippingAddressID=address_id,
            payment_method=payment.method,
            voucherID=voucher.voucherID if voucher is not None else None,
            subtotal=breakdown.subtotal,
            voucher_discount=breakdown.voucher_discount,
            shipping_fee=breakdown.shipping_fee,
            tax=breakdown.tax,
            total_amount=breakdown.total,
        )
