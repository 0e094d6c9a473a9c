# storefront/database.py
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from flask import g

from storefront.config import Config
from storefront.errors import StoreError

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

if not Config.DATABASE_URL.startswith("sqlite"):
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW
else:
    engine_kwargs["connect_args"] = {"check_same_thread": False}

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()

def get_db():
    if 'db' not in g:
        g.db = SessionLocal()
    return g.db

def close_db(e=None):
    try:
        db = g.pop('db', None)
        if db is not None:
            db.close()
    except RuntimeError:
        # Handle case where we're outside of application context
        # This can happen during test teardown
        pass


@contextmanager
def transaction(session):
    """
    Run a unit of work as one commit.

    Domain errors raised inside the block roll the session back and propagate
    unchanged; driver failures are rolled back and surfaced as StoreError.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreError(f"Database operation failed: {exc.__class__.__name__}") from exc
    except Exception:
        session.rollback()
        raise
