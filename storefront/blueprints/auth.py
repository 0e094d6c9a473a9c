from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request, session

from storefront.blueprints import current_user_id, json_payload
from storefront.database import get_db
from storefront.models import User
from storefront.services.auth_service import AuthService
from storefront.services.notification_service import NotificationService

auth_bp = Blueprint("auth", __name__)


def _serialize_user(user: User, auth: AuthService) -> Dict[str, Any]:
    return {
        "id": user.userID,
        "username": user.username,
        "email": user.email,
        "display_name": user.display_name,
        "is_admin": auth.is_admin(user.userID),
    }


@auth_bp.route("/api/auth/register", methods=["POST"])
def register():
    payload = json_payload()
    auth = AuthService(get_db())
    user = auth.register(
        username=payload.get("username", ""),
        email=payload.get("email", ""),
        password=payload.get("password", ""),
        display_name=payload.get("display_name"),
    )
    session["user_id"] = user.userID
    session.setdefault("cart", {"items": []})
    return jsonify({"user": _serialize_user(user, auth)}), 201


@auth_bp.route("/api/auth/login", methods=["POST"])
def login():
    payload = json_payload()
    auth = AuthService(get_db())
    user = auth.authenticate(payload.get("username", ""), payload.get("password", ""))
    session["user_id"] = user.userID
    # Keep a cart built before signing in
    session.setdefault("cart", {"items": []})
    return jsonify({"user": _serialize_user(user, auth)})


@auth_bp.route("/api/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/api/auth/me", methods=["GET"])
def me():
    auth = AuthService(get_db())
    user = auth.require_user(current_user_id())
    return jsonify({"user": _serialize_user(user, auth)})


@auth_bp.route("/api/notifications", methods=["GET"])
def list_notifications():
    user = AuthService(get_db()).require_user(current_user_id())
    notification_service = NotificationService()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = request.args.get("limit", 20, type=int)
    return jsonify({
        "notifications": notification_service.get_notifications(user.userID, unread_only=unread_only, limit=limit),
        "unread_count": notification_service.get_unread_count(user.userID),
    })


@auth_bp.route("/api/notifications/<notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id: str):
    user = AuthService(get_db()).require_user(current_user_id())
    notification_service = NotificationService()
    success = notification_service.mark_as_read(user.userID, notification_id)
    return jsonify({"success": success, "unread_count": notification_service.get_unread_count(user.userID)})
