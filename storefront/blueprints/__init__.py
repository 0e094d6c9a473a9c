"""Request helpers shared by the JSON blueprints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from flask import request, session

from storefront.config import str_to_bool as as_bool
from storefront.errors import ValidationError
from storefront.time_utils import as_utc


def current_user_id() -> Optional[int]:
    return session.get("user_id")


def json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return request.form.to_dict()
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be a whole number") from exc


def required_int(payload: Dict[str, Any], key: str) -> int:
    value = optional_int(payload, key)
    if value is None:
        raise ValidationError(f"{key} is required")
    return value


def parse_datetime(payload: Dict[str, Any], key: str, required: bool = False) -> Optional[datetime]:
    """ISO-8601 in, UTC-aware datetime out."""
    value = payload.get(key)
    if not value:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValidationError(f"{key} must be an ISO-8601 timestamp") from exc
