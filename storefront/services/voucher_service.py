from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.database import transaction
from storefront.errors import CapacityError, NotFoundError, StoreError, ValidationError
from storefront.models import DiscountType, Order, Voucher, VoucherUsage
from storefront.observability import increment_counter, record_event
from storefront.services.auth_service import AuthService
from storefront.services.pricing_service import PricingService
from storefront.time_utils import as_utc, utcnow


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class VoucherService:
    """Voucher eligibility checks and usage accounting."""

    def __init__(self, db_session: Session, auth_service: Optional[AuthService] = None) -> None:
        self.db = db_session
        self.auth = auth_service or AuthService(db_session)
        self.logger = logging.getLogger(__name__)

    def create_voucher(
        self,
        admin_id: int,
        code: str,
        discount_type: DiscountType | str,
        discount_value: int,
        minimum_purchase_amount: Optional[int] = None,
        max_uses: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        active: bool = True,
    ) -> Voucher:
        self.auth.require_admin(admin_id)

        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Voucher code is required")
        try:
            kind = discount_type if isinstance(discount_type, DiscountType) else DiscountType(discount_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown discount type: {discount_type}") from exc
        if discount_value is None or discount_value <= 0:
            raise ValidationError("Discount value must be positive")
        if kind == DiscountType.PERCENTAGE and discount_value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")
        if minimum_purchase_amount is not None and minimum_purchase_amount < 0:
            raise ValidationError("Minimum purchase amount cannot be negative")
        if max_uses is not None and max_uses <= 0:
            raise ValidationError("Max uses must be positive")
        if start_date and end_date and as_utc(start_date) >= as_utc(end_date):
            raise ValidationError("Start date must be before end date")

        if self.get_by_code(normalized):
            raise ValidationError(f"Voucher code {normalized} already exists")

        voucher = Voucher(
            code=normalized,
            discount_type=kind,
            discount_value=discount_value,
            minimum_purchase_amount=minimum_purchase_amount,
            max_uses=max_uses,
            used_count=0,
            active=active,
            start_date=start_date,
            end_date=end_date,
            created_by=admin_id,
        )
        try:
            with transaction(self.db):
                self.db.add(voucher)
        except StoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValidationError(f"Voucher code {normalized} already exists") from exc
            raise
        self.logger.info("Created voucher %s", normalized, extra={"voucher_id": voucher.voucherID})
        return voucher

    def get_by_code(self, code: str) -> Optional[Voucher]:
        return self.db.query(Voucher).filter(Voucher.code == normalize_code(code)).first()

    def list_vouchers(self) -> List[Voucher]:
        return self.db.query(Voucher).order_by(Voucher.created_at.desc()).all()

    def resolve(self, code: str, subtotal: int, now: Optional[datetime] = None) -> Voucher:
        """Return the voucher if it may be applied to a cart of this subtotal."""
        now = now or utcnow()
        voucher = self.get_by_code(code)
        if voucher is None:
            raise NotFoundError(f"Voucher {normalize_code(code)} does not exist")
        if not voucher.active:
            raise ValidationError(f"Voucher {voucher.code} is not active")
        if not voucher.is_within_window(now):
            raise ValidationError(f"Voucher {voucher.code} is not valid at this time")
        if voucher.minimum_purchase_amount is not None and subtotal < voucher.minimum_purchase_amount:
            raise ValidationError(
                f"Voucher {voucher.code} requires a minimum purchase of {voucher.minimum_purchase_amount}"
            )
        if voucher.is_exhausted():
            raise CapacityError(f"Voucher {voucher.code} has reached its usage limit")
        return voucher

    @staticmethod
    def calculate_discount(voucher: Voucher, subtotal: int) -> int:
        return PricingService.voucher_discount(voucher, subtotal)

    def redeem(self, voucher: Voucher, order: Order, user_id: int, discount_amount: int) -> VoucherUsage:
        """
        Record one use of the voucher against an order.

        Runs inside the caller's transaction and never commits. The counter is
        bumped with a conditional UPDATE so concurrent checkouts cannot push
        used_count past max_uses.
        """
        result = self.db.execute(
            update(Voucher)
            .where(
                Voucher.voucherID == voucher.voucherID,
                Voucher.active.is_(True),
                or_(Voucher.max_uses.is_(None), Voucher.used_count < Voucher.max_uses),
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise CapacityError(f"Voucher {voucher.code} has reached its usage limit")

        usage = VoucherUsage(
            voucherID=voucher.voucherID,
            orderID=order.orderID,
            userID=user_id,
            discount_amount=discount_amount,
            used_at=utcnow(),
        )
        self.db.add(usage)
        increment_counter("voucher_redemptions_total", labels={"code": voucher.code})
        record_event(
            "voucher_redeemed",
            {"voucher_id": voucher.voucherID, "order_id": order.orderID, "discount": discount_amount},
        )
        return usage

    def set_active(self, admin_id: int, voucher_id: int, active: bool) -> Voucher:
        self.auth.require_admin(admin_id)
        voucher = self.db.query(Voucher).filter_by(voucherID=voucher_id).first()
        if voucher is None:
            raise NotFoundError(f"Voucher {voucher_id} not found")
        with transaction(self.db):
            voucher.active = active
        self.logger.info("Voucher %s active=%s", voucher.code, active)
        return voucher
