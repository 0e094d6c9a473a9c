from .auth_service import AuthService
from .pricing_service import CartLine, PriceBreakdown, PricingService
from .voucher_service import VoucherService
from .flash_sale_service import FlashSaleService
from .payment_service import PaymentService
from .order_service import CashOnDelivery, CustomerContact, MobileMoneyPayment, OrderService
from .payment_review_service import PaymentReviewService
from .product_service import ProductService
from .storage_service import LocalObjectStorage
from .notification_service import NotificationService

__all__ = [
    "AuthService",
    "CartLine",
    "PriceBreakdown",
    "PricingService",
    "VoucherService",
    "FlashSaleService",
    "PaymentService",
    "CashOnDelivery",
    "CustomerContact",
    "MobileMoneyPayment",
    "OrderService",
    "PaymentReviewService",
    "ProductService",
    "LocalObjectStorage",
    "NotificationService",
]
