from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.database import transaction
from storefront.errors import AlreadyProcessedError, NotFoundError
from storefront.models import (
    Order,
    OrderStatus,
    PaymentRecord,
    PaymentStatus,
)
from storefront.observability import increment_counter, record_event
from storefront.services.auth_service import AuthService
from storefront.services.flash_sale_service import FlashSaleService
from storefront.services.notification_service import (
    publish_order_status_change,
    publish_payment_status_change,
)
from storefront.services.order_service import transition_order
from storefront.time_utils import utcnow


class PaymentReviewService:
    """
    Human-in-the-loop verification of mobile-money payments.

    confirm and reject are the only writers of a payment record's terminal
    state. Each runs as a single transaction built from conditional updates,
    so a second reviewer acting on the same record sees zero rows affected
    and gets AlreadyProcessedError instead of overwriting the first decision.
    """

    def __init__(
        self,
        db_session: Session,
        auth_service: Optional[AuthService] = None,
        flash_sale_service: Optional[FlashSaleService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.auth = auth_service or AuthService(db_session)
        self.flash_sales = flash_sale_service or FlashSaleService(db_session, auth_service=self.auth)

    def confirm(self, payment_id: int, admin_id: Optional[int], now: Optional[datetime] = None) -> PaymentRecord:
        """
        Confirm a pending payment and move its order to processing.

        Flash-sale units on the order are claimed here; if any sale cannot
        cover its line the whole confirmation rolls back with CapacityError.
        """
        self.auth.require_admin(admin_id)
        now = now or utcnow()
        payment = self._load(payment_id)

        with transaction(self.db):
            self._close_payment(payment, PaymentStatus.CONFIRMED, admin_id, now)

            order = payment.order
            if not transition_order(self.db, order.orderID, OrderStatus.PENDING, OrderStatus.PROCESSING):
                raise AlreadyProcessedError(
                    f"Order {order.orderID} is no longer pending; payment {payment_id} left unconfirmed"
                )

            for item in order.items:
                if item.flash_sale is not None and item.flash_sale.active:
                    self.flash_sales.claim_inventory(item.flashSaleID, item.quantity)

        self.db.refresh(payment)
        increment_counter("payments_confirmed_total")
        record_event(
            "payment_confirmed",
            {"payment_id": payment_id, "order_id": payment.orderID, "admin_id": admin_id},
        )
        self.logger.info(
            "Payment %s confirmed",
            payment_id,
            extra={"order_id": payment.orderID, "admin_id": admin_id, "mpesa_code": payment.mpesa_code},
        )
        self._notify(payment, OrderStatus.PROCESSING)
        return payment

    def reject(self, payment_id: int, admin_id: Optional[int], now: Optional[datetime] = None) -> PaymentRecord:
        """Reject a pending payment and cancel its order. Inventory is untouched."""
        self.auth.require_admin(admin_id)
        now = now or utcnow()
        payment = self._load(payment_id)

        order_cancelled = False
        with transaction(self.db):
            self._close_payment(payment, PaymentStatus.REJECTED, admin_id, now)
            order = payment.order
            order_cancelled = transition_order(self.db, order.orderID, OrderStatus.PENDING, OrderStatus.CANCELLED)
            if not order_cancelled:
                self.db.refresh(order)
                if OrderStatus(order.status) != OrderStatus.CANCELLED:
                    raise AlreadyProcessedError(
                        f"Order {order.orderID} is {OrderStatus(order.status).value}; payment {payment_id} left pending"
                    )

        self.db.refresh(payment)
        increment_counter("payments_rejected_total")
        record_event(
            "payment_rejected",
            {"payment_id": payment_id, "order_id": payment.orderID, "admin_id": admin_id},
        )
        self.logger.info("Payment %s rejected", payment_id, extra={"order_id": payment.orderID, "admin_id": admin_id})
        self._notify(payment, OrderStatus.CANCELLED if order_cancelled else None)
        return payment

    def _load(self, payment_id: int) -> PaymentRecord:
        payment = self.db.query(PaymentRecord).filter_by(paymentID=payment_id).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.is_terminal:
            raise AlreadyProcessedError(
                f"Payment {payment_id} is already {PaymentStatus(payment.status).value}"
            )
        return payment

    def _close_payment(self, payment: PaymentRecord, status: PaymentStatus, admin_id: int, now: datetime) -> None:
        if not payment.can_transition(status):
            raise AlreadyProcessedError(f"Payment {payment.paymentID} cannot move to {status.value}")
        result = self.db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.paymentID == payment.paymentID,
                PaymentRecord.status == PaymentStatus.PENDING,
            )
            .values(status=status, confirmed_by=admin_id, confirmed_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            increment_counter("payment_review_conflicts_total")
            raise AlreadyProcessedError(f"Payment {payment.paymentID} was already processed")

    def _notify(self, payment: PaymentRecord, order_status: Optional[OrderStatus]) -> None:
        order: Order = payment.order
        publish_payment_status_change(
            payment.paymentID,
            order.orderID,
            order.userID,
            PaymentStatus(payment.status).value,
            mpesa_code=payment.mpesa_code,
        )
        if order_status is not None:
            publish_order_status_change(order.orderID, order.userID, OrderStatus.PENDING.value, order_status.value)
