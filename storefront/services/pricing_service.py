"""
Checkout pricing.

Every component of a quote is rounded to an integer amount in the currency's
smallest unit before the total is assembled, so a stored total can always be
rebuilt exactly from its parts.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence

from storefront.config import Config
from storefront.errors import ValidationError
from storefront.models import DiscountType, Voucher
from storefront.time_utils import utcnow


def round_currency(value: Decimal | int | float) -> int:
    """Half-up rounding to a whole minor unit."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: int
    name: str = ""
    flash_sale_id: Optional[int] = None

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["line_total"] = self.line_total
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        try:
            return cls(
                product_id=int(data["product_id"]),
                quantity=int(data["quantity"]),
                unit_price=int(data["unit_price"]),
                name=str(data.get("name") or ""),
                flash_sale_id=int(data["flash_sale_id"]) if data.get("flash_sale_id") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed cart line: {exc}") from exc


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: int
    shipping_fee: int
    tax: int
    voucher_discount: int
    total: int
    voucher_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PricingService:
    """Pure computation of checkout totals; never touches the store."""

    def __init__(
        self,
        shipping_rate: Optional[Decimal] = None,
        tax_rate: Optional[Decimal] = None,
        free_shipping_threshold: Optional[int] = None,
        voucher_service=None,
    ) -> None:
        self.shipping_rate = Decimal(str(shipping_rate)) if shipping_rate is not None else Config.SHIPPING_RATE
        self.tax_rate = Decimal(str(tax_rate)) if tax_rate is not None else Config.TAX_RATE
        self.free_shipping_threshold = (
            free_shipping_threshold if free_shipping_threshold is not None else Config.FREE_SHIPPING_THRESHOLD
        )
        self.voucher_service = voucher_service

    @staticmethod
    def subtotal(lines: Iterable[CartLine]) -> int:
        return sum(line.line_total for line in lines)

    def shipping_fee(self, subtotal: int) -> int:
        if self.free_shipping_threshold and subtotal >= self.free_shipping_threshold:
            return 0
        return round_currency(Decimal(subtotal) * self.shipping_rate)

    def tax(self, subtotal: int) -> int:
        # Tax is levied on the pre-discount subtotal
        return round_currency(Decimal(subtotal) * self.tax_rate)

    @staticmethod
    def voucher_discount(voucher: Optional[Voucher], subtotal: int) -> int:
        if voucher is None:
            return 0
        if DiscountType(voucher.discount_type) == DiscountType.PERCENTAGE:
            discount = round_currency(Decimal(subtotal) * Decimal(voucher.discount_value) / Decimal(100))
        else:
            discount = voucher.discount_value
        # Merchandise cost never goes negative, so the total floors at shipping + tax
        return max(0, min(discount, subtotal))

    def quote(self, lines: Sequence[CartLine], voucher: Optional[Voucher] = None) -> PriceBreakdown:
        subtotal = self.subtotal(lines)
        shipping_fee = self.shipping_fee(subtotal)
        tax = self.tax(subtotal)
        discount = self.voucher_discount(voucher, subtotal)
        return PriceBreakdown(
            subtotal=subtotal,
            shipping_fee=shipping_fee,
            tax=tax,
            voucher_discount=discount,
            total=subtotal - discount + shipping_fee + tax,
            voucher_code=voucher.code if voucher is not None else None,
        )

    def quote_with_code(
        self,
        lines: Sequence[CartLine],
        voucher_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PriceBreakdown:
        """Resolve a voucher code (read-only) and quote the cart with it."""
        voucher = None
        if voucher_code and voucher_code.strip():
            if self.voucher_service is None:
                raise ValidationError("Vouchers cannot be applied here")
            voucher = self.voucher_service.resolve(voucher_code, self.subtotal(lines), now or utcnow())
        return self.quote(lines, voucher)


def lines_from_payload(items: Optional[List[Dict[str, Any]]]) -> List[CartLine]:
    return [CartLine.from_dict(item) for item in (items or [])]
