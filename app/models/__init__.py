"""
Record Studio
Model package — shared SQLAlchemy handle.

Every model module imports ``db`` from here:

    from app.models import db
"""

import uuid

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid() -> str:
    """Return a new string primary key."""
    return str(uuid.uuid4())
