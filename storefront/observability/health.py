from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.database import engine


def check_database_health() -> Dict[str, str]:
    """Run ``SELECT 1`` against the store; report UP or DOWN with the driver message."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": exc.__class__.__name__}
    return {"status": "UP", "backend": engine.dialect.name}
