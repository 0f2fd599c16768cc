"""
Soft Delete Mixin

Adds an ``is_deleted`` flag plus ``deleted_at`` timestamp.  Rows carrying
this mixin are never physically removed, which is what lets the changelog
revert a delete.

Usage:
    class Entity(SoftDeleteMixin, db.Model):
        ...

    entity.soft_delete()
    Entity.query_active().filter_by(model_id=mid).all()
    entity.restore()
"""

from datetime import datetime, timezone

from app.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def soft_delete(self, at: datetime | None = None) -> None:
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = at or datetime.now(timezone.utc)

    def restore(self) -> None:
        """Bring a soft-deleted record back."""
        self.is_deleted = False
        self.deleted_at = None

    @classmethod
    def active_clause(cls):
        """WHERE clause matching live rows, for use inside ``select()``."""
        return cls.is_deleted.is_(False)

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.active_clause())

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(True))
