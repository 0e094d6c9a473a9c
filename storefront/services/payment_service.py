from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

import bleach
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.database import transaction
from storefront.errors import (
    AlreadyProcessedError,
    NotFoundError,
    ValidationError,
)
from storefront.models import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
)
from storefront.observability import increment_counter, record_event

TRANSACTION_CODE_PATTERN = re.compile(r"[A-Z0-9]{%d}" % Config.TRANSACTION_CODE_LENGTH)


def extract_transaction_code(message: Optional[str]) -> Optional[str]:
    """Best-effort pick of the M-Pesa transaction code from a pasted message."""
    if not message:
        return None
    match = TRANSACTION_CODE_PATTERN.search(message)
    return match.group(0) if match else None


def clean_message(message: Optional[str]) -> str:
    cleaned = bleach.clean(message or "", tags=[], strip=True).strip()
    return cleaned[: Config.MAX_PAYMENT_MESSAGE_LENGTH]


class PaymentService:
    """
    Captures customer-submitted mobile-money confirmations as pending payment
    records awaiting manual review.

    Never changes the order's status; an admin decision does that.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def submit_payment(
        self,
        order_id: int,
        user_id: int,
        message: str,
        amount: Optional[int] = None,
        phone_number: Optional[str] = None,
    ) -> PaymentRecord:
        """Attach (or replace) the confirmation message for a customer's order."""
        order = self.db.query(Order).filter_by(orderID=order_id).first()
        if order is None or order.userID != user_id:
            raise NotFoundError(f"Order {order_id} not found")

        with transaction(self.db):
            payment = self.record_for_order(order, message, amount=amount, phone_number=phone_number)
        return payment

    def record_for_order(
        self,
        order: Order,
        message: str,
        amount: Optional[int] = None,
        phone_number: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Upsert the pending payment record for an order without committing.

        An order has at most one pending record: a resubmission while one is
        pending overwrites it rather than adding another.
        """
        if PaymentMethod(order.payment_method) != PaymentMethod.MOBILE_MONEY:
            raise ValidationError("Order is not paid by mobile money")
        if OrderStatus(order.status) != OrderStatus.PENDING:
            raise AlreadyProcessedError(f"Order {order.orderID} is already {OrderStatus(order.status).value}")

        cleaned = clean_message(message)
        if not cleaned:
            raise ValidationError("Please paste your M-Pesa confirmation message")

        claimed_amount = order.total_amount if amount is None else amount
        if claimed_amount <= 0:
            raise ValidationError("Payment amount must be positive")

        code = extract_transaction_code(cleaned)
        phone = (phone_number or "").strip() or None

        payment = (
            self.db.query(PaymentRecord)
            .filter(
                PaymentRecord.orderID == order.orderID,
                PaymentRecord.status == PaymentStatus.PENDING,
            )
            .first()
        )
        if payment is None:
            payment = PaymentRecord(
                orderID=order.orderID,
                mpesa_message=cleaned,
                mpesa_code=code,
                phone_number=phone,
                amount=claimed_amount,
                status=PaymentStatus.PENDING,
            )
            self.db.add(payment)
            increment_counter("payments_submitted_total")
            outcome = "created"
        else:
            payment.mpesa_message = cleaned
            payment.mpesa_code = code
            payment.phone_number = phone or payment.phone_number
            payment.amount = claimed_amount
            increment_counter("payments_resubmitted_total")
            outcome = "updated"

        try:
            self.db.flush()
        except IntegrityError as exc:
            raise AlreadyProcessedError(
                f"A payment for order {order.orderID} was submitted at the same time; reload and retry"
            ) from exc
        record_event(
            "payment_submitted",
            {"order_id": order.orderID, "payment_id": payment.paymentID, "outcome": outcome, "has_code": bool(code)},
        )
        self.logger.info(
            "Payment record %s for order %s %s",
            payment.paymentID,
            order.orderID,
            outcome,
            extra={"mpesa_code": code, "amount": claimed_amount},
        )
        return payment

    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        return self.db.query(PaymentRecord).filter_by(paymentID=payment_id).first()

    def list_payments(self, status: Optional[PaymentStatus | str] = None) -> List[PaymentRecord]:
        query = self.db.query(PaymentRecord)
        if status:
            try:
                query = query.filter(PaymentRecord.status == PaymentStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown payment status: {status}") from exc
        return query.order_by(PaymentRecord.created_at.desc(), PaymentRecord.paymentID.desc()).all()

    def summarize(self) -> Dict[str, int]:
        """Counts per payment status for the admin dashboard cards."""
        counts = {status.value: 0 for status in PaymentStatus}
        rows = (
            self.db.query(PaymentRecord.status, func.count(PaymentRecord.paymentID))
            .group_by(PaymentRecord.status)
            .all()
        )
        for status, count in rows:
            counts[PaymentStatus(status).value] = count
        return counts
