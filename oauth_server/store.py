"""
Store boundary helpers.

Connectivity failures coming out of SQLAlchemy are reported as
TransientStoreError so callers never confuse an unreachable database with a
protocol denial. Only idempotent lookups go through retry_once.
"""

from contextlib import contextmanager
from datetime import datetime

from loguru import logger
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.exceptions import TransientStoreError

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns hold"""
    return datetime.utcnow()


@contextmanager
def translate_store_errors(db=None, operation: str = "store call"):
    try:
        yield
    except TRANSIENT_ERRORS as e:
        logger.error(f"[STORE] {operation} failed: {type(e).__name__}: {e}")
        if db is not None:
            db.rollback()
        raise TransientStoreError() from e


def retry_once(fn, *args, db=None, **kwargs):
    """Run an idempotent lookup, retrying a single time on a transient failure"""
    operation = getattr(fn, "__name__", "lookup")
    try:
        with translate_store_errors(db, operation):
            return fn(*args, **kwargs)
    except TransientStoreError:
        logger.warning(f"[STORE] Retrying {operation} once")

    with translate_store_errors(db, operation):
        return fn(*args, **kwargs)
