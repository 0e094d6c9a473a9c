from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.models import FlashSale, Order, OrderStatus
from storefront.services.payment_service import PaymentService
from storefront.time_utils import as_utc, utcnow

# Orders in these states have money either confirmed or promised on delivery.
REVENUE_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)
DEFAULT_WINDOW_DAYS = 14


@dataclass(frozen=True)
class DayWindow:
    start: date
    end: date  # exclusive

    @classmethod
    def trailing(cls, days: int, now: Optional[datetime] = None) -> "DayWindow":
        today = as_utc(now or utcnow()).date()
        return cls(start=today - timedelta(days=days - 1), end=today + timedelta(days=1))

    def days(self) -> List[date]:
        return [self.start + timedelta(days=offset) for offset in range((self.end - self.start).days)]


def order_status_counts(session: Session) -> Dict[str, int]:
    rows = session.query(Order.status, func.count(Order.orderID)).group_by(Order.status).all()
    counts = {status.value: 0 for status in OrderStatus}
    for status, count in rows:
        counts[OrderStatus(status).value] = count
    return counts


def revenue_total(session: Session) -> int:
    total = (
        session.query(func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.status.in_(REVENUE_STATUSES))
        .scalar()
    )
    return int(total or 0)


def daily_order_series(session: Session, window: DayWindow) -> Dict[str, object]:
    """Orders placed per day inside the window, zero-filled."""
    start = datetime.combine(window.start, datetime.min.time())
    end = datetime.combine(window.end, datetime.min.time())
    rows = (
        session.query(Order.created_at)
        .filter(Order.created_at >= start)
        .filter(Order.created_at < end)
        .all()
    )
    counts: Counter = Counter(as_utc(row[0]).date() for row in rows if row[0] is not None)
    series = [{"date": day.isoformat(), "count": counts.get(day, 0)} for day in window.days()]
    total = sum(point["count"] for point in series)
    return {
        "total": total,
        "series": series,
        "series_max": max((point["count"] for point in series), default=0),
        "mean_per_day": total / len(series) if series else 0.0,
    }


def flash_sale_sell_through(session: Session) -> List[Dict[str, object]]:
    sales = session.query(FlashSale).filter(FlashSale.quantity_limit.isnot(None)).all()
    return [
        {
            "flash_sale_id": sale.flashSaleID,
            "product_id": sale.productID,
            "sold_quantity": sale.sold_quantity,
            "quantity_limit": sale.quantity_limit,
            "sell_through": sale.sold_quantity / sale.quantity_limit if sale.quantity_limit else 0.0,
        }
        for sale in sales
    ]


def compute_dashboard(
    session: Session,
    days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    window = DayWindow.trailing(days, now)
    return {
        "orders": order_status_counts(session),
        "payments": PaymentService(session).summarize(),
        "revenue": revenue_total(session),
        "orders_per_day": daily_order_series(session, window),
        "flash_sales": flash_sale_sell_through(session),
    }


__all__ = [
    "DayWindow",
    "order_status_counts",
    "revenue_total",
    "daily_order_series",
    "flash_sale_sell_through",
    "compute_dashboard",
]
