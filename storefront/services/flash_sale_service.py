# storefront/services/flash_sale_service.py
from datetime import datetime
from typing import List, Optional
from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from storefront.database import transaction
from storefront.errors import CapacityError, NotFoundError, ValidationError
from storefront.models import FlashSale, Product
from storefront.observability import increment_counter, record_event
from storefront.services.auth_service import AuthService
from storefront.time_utils import as_utc, utcnow
import logging

logger = logging.getLogger(__name__)

class FlashSaleService:
    """Service class for managing Flash Sale operations using Repository pattern"""

    def __init__(self, db_session: Session, auth_service: Optional[AuthService] = None):
        self.db = db_session
        self.auth = auth_service or AuthService(db_session)

    def create_flash_sale(
        self,
        admin_id: int,
        product_id: int,
        sale_price: int,
        start_date: datetime,
        end_date: datetime,
        quantity_limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> FlashSale:
        """Create a new flash sale priced below the product's current price"""
        self.auth.require_admin(admin_id)
        now = now or utcnow()

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")

        start_date = as_utc(start_date)
        end_date = as_utc(end_date)
        if start_date >= end_date:
            raise ValidationError("Start date must be before end date")
        if end_date <= now:
            raise ValidationError("End date must be in the future")

        original_price = product.price
        if sale_price is None or sale_price <= 0:
            raise ValidationError("Sale price must be positive")
        if sale_price >= original_price:
            raise ValidationError("Sale price must be below the original price")
        if quantity_limit is not None and quantity_limit <= 0:
            raise ValidationError("Quantity limit must be positive")

        # Check for overlapping flash sales
        overlapping = self.db.query(FlashSale).filter(
            FlashSale.productID == product_id,
            FlashSale.active.is_(True),
            FlashSale.start_date < end_date,
            FlashSale.end_date > start_date,
        ).first()
        if overlapping:
            raise ValidationError("Overlapping flash sale already exists for this product")

        flash_sale = FlashSale(
            productID=product_id,
            original_price=original_price,
            sale_price=sale_price,
            discount_percentage=FlashSale.derive_discount_percentage(original_price, sale_price),
            start_date=start_date,
            end_date=end_date,
            quantity_limit=quantity_limit,
            sold_quantity=0,
            active=True,
            created_by=admin_id,
        )
        with transaction(self.db):
            self.db.add(flash_sale)

        logger.info(f"Created flash sale {flash_sale.flashSaleID} for product {product_id}")
        return flash_sale

    def get_active_flash_sales(self, now: Optional[datetime] = None) -> List[FlashSale]:
        """Get all flash sales that are switched on and inside their window"""
        now = now or utcnow()
        candidates = self.db.query(FlashSale).filter(FlashSale.active.is_(True)).order_by(FlashSale.end_date).all()
        return [sale for sale in candidates if sale.is_live(now)]

    def get_flash_sale_by_id(self, flash_sale_id: int) -> Optional[FlashSale]:
        """Get flash sale by ID"""
        return self.db.query(FlashSale).filter_by(flashSaleID=flash_sale_id).first()

    def get_active_sale_for_product(self, product_id: int, now: Optional[datetime] = None) -> Optional[FlashSale]:
        now = now or utcnow()
        for sale in self.db.query(FlashSale).filter(
            FlashSale.productID == product_id,
            FlashSale.active.is_(True),
        ).all():
            if sale.is_live(now):
                return sale
        return None

    @staticmethod
    def available_quantity(flash_sale: FlashSale) -> Optional[int]:
        return flash_sale.get_available_quantity()

    def ensure_available(self, flash_sale: FlashSale, quantity: int = 1) -> None:
        """
        Advisory check for add-to-cart and buy-now.

        Concurrent buyers can still race past this; the conditional increment
        in claim_inventory at confirmation time is what prevents overselling.
        """
        available = flash_sale.get_available_quantity()
        if available is None:
            return
        if available <= 0:
            raise CapacityError("This flash sale item is out of stock")
        if quantity > available:
            raise CapacityError(f"Not enough items available. Only {available} left")

    def claim_inventory(self, flash_sale_id: int, quantity: int) -> None:
        """
        Atomically add quantity to sold_quantity unless it would pass the limit.

        Runs inside the caller's transaction and never commits.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        result = self.db.execute(
            update(FlashSale)
            .where(
                FlashSale.flashSaleID == flash_sale_id,
                or_(
                    FlashSale.quantity_limit.is_(None),
                    FlashSale.sold_quantity + quantity <= FlashSale.quantity_limit,
                ),
            )
            .values(sold_quantity=FlashSale.sold_quantity + quantity)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            if self.get_flash_sale_by_id(flash_sale_id) is None:
                raise NotFoundError(f"Flash sale {flash_sale_id} not found")
            increment_counter("flash_sale_oversell_blocked_total")
            raise CapacityError(f"Flash sale {flash_sale_id} cannot cover {quantity} more unit(s)")
        record_event("flash_sale_inventory_claimed", {"flash_sale_id": flash_sale_id, "quantity": quantity})

    def set_active(self, admin_id: int, flash_sale_id: int, active: bool) -> FlashSale:
        self.auth.require_admin(admin_id)
        flash_sale = self.get_flash_sale_by_id(flash_sale_id)
        if not flash_sale:
            raise NotFoundError(f"Flash sale {flash_sale_id} not found")
        with transaction(self.db):
            flash_sale.active = active
        logger.info(f"Flash sale {flash_sale_id} active={active}")
        return flash_sale

    @staticmethod
    def time_remaining(end_date: datetime, now: Optional[datetime] = None) -> str:
        """Countdown label shown next to a live sale"""
        now = now or utcnow()
        seconds = int((as_utc(end_date) - now).total_seconds())
        if seconds <= 0:
            return "Expired"

        days, remainder = divmod(seconds, 86400)
        hours, remainder = divmod(remainder, 3600)
        minutes = remainder // 60

        if days > 0:
            return f"{days}d {hours}h {minutes}m"
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"
