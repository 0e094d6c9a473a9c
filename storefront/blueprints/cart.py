from __future__ import annotations

import logging
from typing import Any, Dict, List

from flask import Blueprint, jsonify, request, session

from storefront.blueprints import as_bool, current_user_id, json_payload, optional_int, required_int
from storefront.config import Config
from storefront.database import get_db
from storefront.errors import ValidationError
from storefront.services.auth_service import AuthService
from storefront.services.flash_sale_service import FlashSaleService
from storefront.services.notification_service import build_mailto_link, build_whatsapp_link
from storefront.services.order_service import CustomerContact, OrderService, payment_choice_from_payload
from storefront.services.payment_service import PaymentService
from storefront.services.pricing_service import CartLine, PricingService, lines_from_payload
from storefront.services.product_service import ProductService
from storefront.services.voucher_service import VoucherService

cart_bp = Blueprint("cart", __name__)
logger = logging.getLogger(__name__)


# --- Session cart ---
def _cart_lines() -> List[CartLine]:
    cart = session.get("cart") or {}
    return lines_from_payload(cart.get("items"))


def _save_cart(lines: List[CartLine]) -> None:
    session["cart"] = {"items": [line.to_dict() for line in lines]}
    session.modified = True


def _pricing() -> PricingService:
    db = get_db()
    return PricingService(voucher_service=VoucherService(db))


def _cart_response(lines: List[CartLine], voucher_code: str | None = None) -> Dict[str, Any]:
    breakdown = _pricing().quote_with_code(lines, voucher_code)
    return {
        "items": [line.to_dict() for line in lines],
        "quantity": sum(line.quantity for line in lines),
        "currency": Config.CURRENCY,
        "totals": breakdown.to_dict(),
    }


@cart_bp.route("/api/cart", methods=["GET"])
def view_cart():
    return jsonify(_cart_response(_cart_lines()))


@cart_bp.route("/api/cart/items", methods=["POST"])
def add_to_cart():
    """Add a product at its current price; a live flash sale supplies the price instead."""
    db = get_db()
    AuthService(db).require_user(current_user_id())
    payload = json_payload()
    product_id = required_int(payload, "product_id")
    quantity = optional_int(payload, "quantity") or 1
    buy_now = as_bool(payload.get("buy_now"))

    if quantity < 1 or quantity > Config.MAX_LINE_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {Config.MAX_LINE_QUANTITY}")

    product = ProductService(db).get_product(product_id)
    if not product.in_stock:
        raise ValidationError(f"{product.name} is out of stock")

    flash_sales = FlashSaleService(db)
    sale = flash_sales.get_active_sale_for_product(product_id)
    sale_id = sale.flashSaleID if sale else None
    unit_price = sale.sale_price if sale else product.price

    lines = [] if buy_now else _cart_lines()
    existing = next(
        (line for line in lines if line.product_id == product_id and line.flash_sale_id == sale_id),
        None,
    )
    new_quantity = quantity + (existing.quantity if existing else 0)
    if new_quantity > Config.MAX_LINE_QUANTITY:
        raise ValidationError(f"Quantity cannot exceed {Config.MAX_LINE_QUANTITY}")
    if sale is not None:
        flash_sales.ensure_available(sale, new_quantity)

    if existing:
        # Price stays as captured when the line was first added
        lines = [
            CartLine(line.product_id, new_quantity, line.unit_price, line.name, line.flash_sale_id)
            if line is existing
            else line
            for line in lines
        ]
    else:
        lines.append(CartLine(product_id, quantity, unit_price, product.name, sale_id))
    _save_cart(lines)
    return jsonify(_cart_response(lines)), 201


@cart_bp.route("/api/cart/items/<int:product_id>", methods=["DELETE"])
def remove_from_cart(product_id: int):
    lines = [line for line in _cart_lines() if line.product_id != product_id]
    _save_cart(lines)
    return jsonify(_cart_response(lines))


@cart_bp.route("/api/cart/quote", methods=["POST"])
def quote_cart():
    payload = json_payload()
    return jsonify(_cart_response(_cart_lines(), payload.get("voucher_code")))


@cart_bp.route("/api/checkout", methods=["POST"])
def checkout():
    db = get_db()
    user = AuthService(db).require_user(current_user_id())
    payload = json_payload()
    lines = _cart_lines()

    contact = CustomerContact(
        name=payload.get("customer_name") or user.display_name or user.username,
        email=payload.get("customer_email") or user.email,
        phone=payload.get("customer_phone"),
    )
    payment = payment_choice_from_payload(
        payload.get("payment_method"),
        message=payload.get("mpesa_message"),
        phone_number=payload.get("phone_number"),
    )

    order = OrderService(db).submit_order(
        user.userID,
        lines,
        contact,
        payment,
        shipping_address=payload.get("shipping_address"),
        shipping_address_id=optional_int(payload, "shipping_address_id"),
        voucher_code=payload.get("voucher_code"),
    )
    # Only a successful checkout empties the cart
    _save_cart([])

    summary = f"Order #{order.orderID} total {Config.CURRENCY} {order.total_amount}"
    return jsonify({
        "order": order.to_dict(),
        "payee_number": Config.MPESA_PAYEE_NUMBER,
        "contact": {
            "whatsapp": build_whatsapp_link(f"Hello, I have a question about {summary}"),
            "email": build_mailto_link(subject=f"Order #{order.orderID}", body=summary),
        },
    }), 201


@cart_bp.route("/api/orders", methods=["GET"])
def list_orders():
    db = get_db()
    user = AuthService(db).require_user(current_user_id())
    limit = request.args.get("limit", Config.ORDER_HISTORY_PAGE_SIZE, type=int)
    orders = OrderService(db).list_user_orders(user.userID, limit=limit)
    return jsonify({"orders": [order.to_dict() for order in orders]})


@cart_bp.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
def cancel_order(order_id: int):
    order = OrderService(get_db()).cancel_order(order_id, current_user_id())
    return jsonify({"order": order.to_dict()})


@cart_bp.route("/api/orders/<int:order_id>/payment", methods=["POST"])
def submit_payment(order_id: int):
    """Paste (or re-paste) the M-Pesa confirmation for a pending order."""
    db = get_db()
    user = AuthService(db).require_user(current_user_id())
    payload = json_payload()
    payment = PaymentService(db).submit_payment(
        order_id,
        user.userID,
        payload.get("mpesa_message", ""),
        amount=optional_int(payload, "amount"),
        phone_number=payload.get("phone_number"),
    )
    logger.info("Payment submitted for order %s", order_id, extra={"payment_id": payment.paymentID})
    return jsonify({"payment": payment.to_dict()}), 201


@cart_bp.route("/api/flash-sales", methods=["GET"])
def active_flash_sales():
    flash_sales = FlashSaleService(get_db())
    sales = []
    for sale in flash_sales.get_active_flash_sales():
        data = sale.to_dict()
        data["time_remaining"] = FlashSaleService.time_remaining(sale.end_date)
        sales.append(data)
    return jsonify({"flash_sales": sales})
