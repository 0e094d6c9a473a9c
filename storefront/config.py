"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    # SQLite dev fallback stored under /db/storefront.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "storefront.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Storefront")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py + Docker)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Checkout pricing knobs. Amounts are in the currency's smallest unit.
    CURRENCY: Final[str] = os.getenv("CURRENCY", "KES")
    SHIPPING_RATE: Final[Decimal] = Decimal(os.getenv("SHIPPING_RATE", "0.15"))
    TAX_RATE: Final[Decimal] = Decimal(os.getenv("TAX_RATE", "0.16"))
    # 0 disables free delivery
    FREE_SHIPPING_THRESHOLD: Final[int] = int(os.getenv("FREE_SHIPPING_THRESHOLD", "0"))
    MAX_LINE_QUANTITY: Final[int] = int(os.getenv("MAX_LINE_QUANTITY", "99"))

    # Mobile money (M-Pesa) manual reconciliation
    MPESA_PAYEE_NUMBER: Final[str] = os.getenv("MPESA_PAYEE_NUMBER", "0700000000")
    TRANSACTION_CODE_LENGTH: Final[int] = int(os.getenv("TRANSACTION_CODE_LENGTH", "10"))
    MAX_PAYMENT_MESSAGE_LENGTH: Final[int] = int(os.getenv("MAX_PAYMENT_MESSAGE_LENGTH", "1000"))

    # Outbound notifications (fire-and-forget)
    WHATSAPP_NUMBER: Final[str] = os.getenv("WHATSAPP_NUMBER", "254700000000")
    SUPPORT_EMAIL: Final[str] = os.getenv("SUPPORT_EMAIL", "support@example.com")
    NOTIFICATION_WEBHOOK_URL: Final[str] = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    NOTIFICATION_TIMEOUT_SECONDS: Final[float] = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "3"))

    # Product image uploads (object storage)
    UPLOAD_SUBDIR: Final[str] = os.getenv("UPLOAD_SUBDIR", "uploads/products")
    UPLOAD_DIR: Final[Path] = Path(
        os.getenv("UPLOAD_DIR", (BASE_DIR / "static" / UPLOAD_SUBDIR).as_posix())
    )
    PUBLIC_BASE_URL: Final[str] = os.getenv("PUBLIC_BASE_URL", "")
    _allowed_ext = [
        ext.strip().lower()
        for ext in os.getenv("UPLOAD_ALLOWED_EXTENSIONS", "jpg,jpeg,png,gif,webp").split(",")
        if ext.strip()
    ]
    UPLOAD_ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = tuple(_allowed_ext) or ("jpg", "jpeg", "png", "gif", "webp")

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    ORDER_HISTORY_PAGE_SIZE: Final[int] = int(os.getenv("ORDER_HISTORY_PAGE_SIZE", "20"))

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["CURRENCY"] = cls.CURRENCY
        app.config["MPESA_PAYEE_NUMBER"] = cls.MPESA_PAYEE_NUMBER
        cls.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        app.config["UPLOAD_DIR"] = str(cls.UPLOAD_DIR)
        app.config["UPLOAD_SUBDIR"] = cls.UPLOAD_SUBDIR
        app.config["UPLOAD_ALLOWED_EXTENSIONS"] = cls.UPLOAD_ALLOWED_EXTENSIONS
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
