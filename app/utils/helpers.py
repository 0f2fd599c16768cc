"""Shared utility functions.

atomic:       transaction scope for service-layer mutations
parse_date:   ISO / DD.MM.YYYY date parsing (returns None on bad input)
now_utc:      timezone-aware "now"
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import StoreError
from app.models import db

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def atomic():
    """Run a block as one transaction on the shared session.

    Commits when the block finishes, rolls back on any exception.
    Domain exceptions propagate unchanged; ``SQLAlchemyError`` is logged and
    re-raised as ``StoreError``.  Nothing is retried here.

    Usage::

        with atomic():
            db.session.add(entity)
            write_changelog(...)
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise StoreError("Duplicate or constraint violation") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error, transaction rolled back")
        raise StoreError("Database error") from exc
    except Exception:
        db.session.rollback()
        raise


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None
