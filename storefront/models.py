# storefront/models.py
from enum import Enum
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    Boolean,
    Index,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
    text,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
# This ensures all models use the same SQLAlchemy metadata, preventing conflicts.
from storefront.database import Base
from storefront.errors import ValidationError
from storefront.time_utils import utcnow, as_utc


def _percent_off(original_price: int, price: int) -> int:
    ratio = Decimal(original_price - price) * 100 / Decimal(original_price)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    MOBILE_MONEY = "mpesa"
    CASH_ON_DELIVERY = "cash"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class AppRole(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


class InvalidTransitionError(ValidationError, ValueError):
    """Raised when a status write is not in the model's transition table."""


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(255))
    created_at = Column(DateTime, default=utcnow)

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="user")
    shipping_addresses = relationship("ShippingAddress", back_populates="user", cascade="all, delete-orphan")

    def has_role(self, role: AppRole) -> bool:
        return any(r.role == role for r in self.roles)


class UserRole(Base):
    __tablename__ = 'UserRole'
    __table_args__ = (UniqueConstraint("userID", "role", name="uq_user_role"),)

    userRoleID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    role = _enum_column(AppRole, "app_role", nullable=False, default=AppRole.USER)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="roles")


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(120), nullable=False, default="general")
    # Smallest currency unit
    price = Column(Integer, nullable=False)
    original_price = Column(Integer)
    in_stock = Column(Boolean, nullable=False, default=True)
    image_url = Column(String(512))
    badge = Column(String(50))
    created_by = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    flash_sales = relationship("FlashSale", back_populates="product")

    @property
    def discount_percentage(self) -> int:
        if not self.original_price or self.original_price <= self.price:
            return 0
        return _percent_off(self.original_price, self.price)

    def to_dict(self) -> dict:
        return {
            "id": self.productID,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price": self.price,
            "original_price": self.original_price,
            "discount_percentage": self.discount_percentage,
            "in_stock": self.in_stock,
            "image_url": self.image_url,
            "badge": self.badge,
        }


class ShippingAddress(Base):
    __tablename__ = 'ShippingAddress'
    shippingAddressID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(50))
    address_line_1 = Column(String(255), nullable=False)
    address_line_2 = Column(String(255))
    city = Column(String(120), nullable=False)
    county = Column(String(120))
    postal_code = Column(String(20))
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="shipping_addresses")

    def as_text(self) -> str:
        parts = [
            self.name,
            self.address_line_1,
            self.address_line_2,
            self.city,
            self.county,
            self.postal_code,
        ]
        return ", ".join(part for part in parts if part)


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50))
    shipping_address = Column(Text, nullable=False)
    shippingAddressID = Column(Integer, ForeignKey('ShippingAddress.shippingAddressID'))
    payment_method = _enum_column(PaymentMethod, "payment_method", nullable=False)
    voucherID = Column(Integer, ForeignKey('Voucher.voucherID'))
    subtotal = Column(Integer, nullable=False)
    voucher_discount = Column(Integer, nullable=False, default=0)
    shipping_fee = Column(Integer, nullable=False, default=0)
    tax = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    status = _enum_column(OrderStatus, "order_status", nullable=False, default=OrderStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("PaymentRecord", back_populates="order", order_by="PaymentRecord.paymentID")
    voucher = relationship("Voucher")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    @classmethod
    def allowed_transitions(cls, status: OrderStatus) -> set:
        return cls._VALID_TRANSITIONS.get(OrderStatus(status), set())

    def can_transition(self, new_status: OrderStatus) -> bool:
        return new_status in self.allowed_transitions(self.status)

    def reconciles(self) -> bool:
        return self.total_amount == self.subtotal - self.voucher_discount + self.shipping_fee + self.tax

    def to_dict(self) -> dict:
        return {
            "id": self.orderID,
            "user_id": self.userID,
            "status": OrderStatus(self.status).value,
            "payment_method": PaymentMethod(self.payment_method).value,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "voucher_id": self.voucherID,
            "subtotal": self.subtotal,
            "voucher_discount": self.voucher_discount,
            "shipping_fee": self.shipping_fee,
            "tax": self.tax,
            "total_amount": self.total_amount,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrderItem(Base):
    __tablename__ = 'OrderItem'

    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    flashSaleID = Column(Integer, ForeignKey('FlashSale.flashSaleID'))
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    # Price captured in the cart at add time
    unit_price = Column(Integer, nullable=False)
    line_total = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    flash_sale = relationship("FlashSale")

    def to_dict(self) -> dict:
        return {
            "product_id": self.productID,
            "flash_sale_id": self.flashSaleID,
            "name": self.product_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
        }


class PaymentRecord(Base):
    """Manually submitted proof of an off-platform mobile-money transfer."""

    __tablename__ = 'MpesaPayment'
    __table_args__ = (
        # At most one pending record per order, even under concurrent resubmission.
        Index(
            "uq_mpesa_payment_pending_order",
            "orderID",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    paymentID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    mpesa_message = Column(Text, nullable=False)
    mpesa_code = Column(String(20))
    phone_number = Column(String(50))
    amount = Column(Integer, nullable=False)
    status = _enum_column(PaymentStatus, "payment_status", nullable=False, default=PaymentStatus.PENDING)
    confirmed_by = Column(Integer, ForeignKey('User.userID'))
    confirmed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payments")

    _VALID_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.CONFIRMED, PaymentStatus.REJECTED},
    }

    @property
    def is_terminal(self) -> bool:
        return PaymentStatus(self.status) in {PaymentStatus.CONFIRMED, PaymentStatus.REJECTED}

    def can_transition(self, new_status: PaymentStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(PaymentStatus(self.status), set())
        return new_status in allowed

    def to_dict(self) -> dict:
        return {
            "id": self.paymentID,
            "order_id": self.orderID,
            "mpesa_message": self.mpesa_message,
            "mpesa_code": self.mpesa_code,
            "phone_number": self.phone_number,
            "amount": self.amount,
            "status": PaymentStatus(self.status).value,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Voucher(Base):
    __tablename__ = 'Voucher'

    voucherID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False)
    discount_type = _enum_column(DiscountType, "discount_type", nullable=False)
    discount_value = Column(Integer, nullable=False)
    minimum_purchase_amount = Column(Integer)
    max_uses = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    created_by = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utcnow)

    usages = relationship("VoucherUsage", back_populates="voucher")

    def is_within_window(self, now: datetime) -> bool:
        start = as_utc(self.start_date)
        end = as_utc(self.end_date)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    def is_exhausted(self) -> bool:
        return self.max_uses is not None and (self.used_count or 0) >= self.max_uses

    def to_dict(self) -> dict:
        return {
            "id": self.voucherID,
            "code": self.code,
            "discount_type": DiscountType(self.discount_type).value,
            "discount_value": self.discount_value,
            "minimum_purchase_amount": self.minimum_purchase_amount,
            "max_uses": self.max_uses,
            "used_count": self.used_count,
            "active": self.active,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }


class VoucherUsage(Base):
    __tablename__ = 'VoucherUsage'
    __table_args__ = (UniqueConstraint("voucherID", "orderID", name="uq_voucher_usage_order"),)

    voucherUsageID = Column(Integer, primary_key=True, autoincrement=True)
    voucherID = Column(Integer, ForeignKey('Voucher.voucherID'), nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    discount_amount = Column(Integer, nullable=False)
    used_at = Column(DateTime, default=utcnow)

    voucher = relationship("Voucher", back_populates="usages")


class FlashSale(Base):
    __tablename__ = 'FlashSale'
    flashSaleID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    original_price = Column(Integer, nullable=False)
    sale_price = Column(Integer, nullable=False)
    discount_percentage = Column(Integer, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    quantity_limit = Column(Integer)
    sold_quantity = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="flash_sales")

    @staticmethod
    def derive_discount_percentage(original_price: int, sale_price: int) -> int:
        return _percent_off(original_price, sale_price)

    def is_live(self, now: datetime) -> bool:
        if not self.active:
            return False
        return as_utc(self.start_date) <= now <= as_utc(self.end_date)

    def get_available_quantity(self) -> Optional[int]:
        """Remaining units, or None when the sale has no quantity limit."""
        if self.quantity_limit is None:
            return None
        return self.quantity_limit - (self.sold_quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.flashSaleID,
            "product_id": self.productID,
            "product_name": self.product.name if self.product else None,
            "original_price": self.original_price,
            "sale_price": self.sale_price,
            "discount_percentage": self.discount_percentage,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "quantity_limit": self.quantity_limit,
            "sold_quantity": self.sold_quantity,
            "available_quantity": self.get_available_quantity(),
            "active": self.active,
        }
