from __future__ import annotations

from flask import Blueprint, jsonify, request

from storefront.blueprints import as_bool, current_user_id, json_payload, optional_int, parse_datetime, required_int
from storefront.database import get_db
from storefront.errors import ValidationError
from storefront.observability import get_metrics_snapshot
from storefront.observability.business_metrics import compute_dashboard
from storefront.services.auth_service import AuthService
from storefront.services.flash_sale_service import FlashSaleService
from storefront.services.order_service import OrderService
from storefront.services.payment_review_service import PaymentReviewService
from storefront.services.payment_service import PaymentService
from storefront.services.product_service import ProductService
from storefront.services.voucher_service import VoucherService

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _require_admin() -> int:
    """Role is re-read from the store on every admin request."""
    user = AuthService(get_db()).require_admin(current_user_id())
    return user.userID


# --- Payments ---
@admin_bp.route("/payments", methods=["GET"])
def list_payments():
    _require_admin()
    payment_service = PaymentService(get_db())
    payments = payment_service.list_payments(request.args.get("status") or None)
    return jsonify({
        "payments": [payment.to_dict() for payment in payments],
        "summary": payment_service.summarize(),
    })


@admin_bp.route("/payments/<int:payment_id>/confirm", methods=["POST"])
def confirm_payment(payment_id: int):
    admin_id = _require_admin()
    payment = PaymentReviewService(get_db()).confirm(payment_id, admin_id)
    return jsonify({"payment": payment.to_dict(), "order": payment.order.to_dict()})


@admin_bp.route("/payments/<int:payment_id>/reject", methods=["POST"])
def reject_payment(payment_id: int):
    admin_id = _require_admin()
    payment = PaymentReviewService(get_db()).reject(payment_id, admin_id)
    return jsonify({"payment": payment.to_dict(), "order": payment.order.to_dict()})


# --- Orders ---
@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    _require_admin()
    orders = OrderService(get_db()).list_orders(request.args.get("status") or None)
    return jsonify({"orders": [order.to_dict() for order in orders]})


@admin_bp.route("/orders/<int:order_id>/status", methods=["POST"])
def update_order_status(order_id: int):
    admin_id = _require_admin()
    status = json_payload().get("status")
    if not status:
        raise ValidationError("status is required")
    order = OrderService(get_db()).update_status(order_id, admin_id, status)
    return jsonify({"order": order.to_dict()})


# --- Vouchers ---
@admin_bp.route("/vouchers", methods=["GET"])
def list_vouchers():
    _require_admin()
    return jsonify({"vouchers": [voucher.to_dict() for voucher in VoucherService(get_db()).list_vouchers()]})


@admin_bp.route("/vouchers", methods=["POST"])
def create_voucher():
    admin_id = _require_admin()
    payload = json_payload()
    voucher = VoucherService(get_db()).create_voucher(
        admin_id,
        code=payload.get("code", ""),
        discount_type=payload.get("discount_type", ""),
        discount_value=required_int(payload, "discount_value"),
        minimum_purchase_amount=optional_int(payload, "minimum_purchase_amount"),
        max_uses=optional_int(payload, "max_uses"),
        start_date=parse_datetime(payload, "start_date"),
        end_date=parse_datetime(payload, "end_date"),
        active=as_bool(payload.get("active"), default=True),
    )
    return jsonify({"voucher": voucher.to_dict()}), 201


@admin_bp.route("/vouchers/<int:voucher_id>/toggle", methods=["POST"])
def toggle_voucher(voucher_id: int):
    admin_id = _require_admin()
    active = as_bool(json_payload().get("active"))
    voucher = VoucherService(get_db()).set_active(admin_id, voucher_id, active)
    return jsonify({"voucher": voucher.to_dict()})


# --- Flash sales ---
@admin_bp.route("/flash-sales", methods=["POST"])
def create_flash_sale():
    admin_id = _require_admin()
    payload = json_payload()
    flash_sale = FlashSaleService(get_db()).create_flash_sale(
        admin_id,
        product_id=required_int(payload, "product_id"),
        sale_price=required_int(payload, "sale_price"),
        start_date=parse_datetime(payload, "start_date", required=True),
        end_date=parse_datetime(payload, "end_date", required=True),
        quantity_limit=optional_int(payload, "quantity_limit"),
    )
    return jsonify({"flash_sale": flash_sale.to_dict()}), 201


@admin_bp.route("/flash-sales/<int:flash_sale_id>/toggle", methods=["POST"])
def toggle_flash_sale(flash_sale_id: int):
    admin_id = _require_admin()
    active = as_bool(json_payload().get("active"))
    flash_sale = FlashSaleService(get_db()).set_active(admin_id, flash_sale_id, active)
    return jsonify({"flash_sale": flash_sale.to_dict()})


# --- Products ---
@admin_bp.route("/products", methods=["POST"])
def create_product():
    admin_id = _require_admin()
    product = ProductService(get_db()).create_product(admin_id, json_payload())
    return jsonify({"product": product.to_dict()}), 201


@admin_bp.route("/products/<int:product_id>", methods=["PATCH", "PUT"])
def update_product(product_id: int):
    admin_id = _require_admin()
    product = ProductService(get_db()).update_product(admin_id, product_id, json_payload())
    return jsonify({"product": product.to_dict()})


@admin_bp.route("/products/<int:product_id>", methods=["DELETE"])
def delete_product(product_id: int):
    admin_id = _require_admin()
    ProductService(get_db()).delete_product(admin_id, product_id)
    return jsonify({"success": True})


@admin_bp.route("/products/<int:product_id>/image", methods=["POST"])
def upload_product_image(product_id: int):
    admin_id = _require_admin()
    upload = request.files.get("image")
    if upload is None:
        raise ValidationError("An image file is required")
    product = ProductService(get_db()).attach_image(admin_id, product_id, upload)
    return jsonify({"product": product.to_dict()})


# --- Metrics ---
@admin_bp.route("/metrics", methods=["GET"])
def metrics():
    _require_admin()
    days = request.args.get("days", 14, type=int)
    return jsonify({
        "business": compute_dashboard(get_db(), days=max(days, 1)),
        "runtime": get_metrics_snapshot(),
    })
