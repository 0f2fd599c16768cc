"""
Record Studio
Entity domain model.

Models:
    - Entity: one concrete record of a DataModel.  Property values live in
      the ``data`` JSON bag keyed by property name; they are validated by
      ``app.services.validation`` before every write.
"""

from datetime import datetime, timezone

from app.models import _uuid, db
from app.models.soft_delete import SoftDeleteMixin


def _utcnow():
    return datetime.now(timezone.utc)


class Entity(SoftDeleteMixin, db.Model):
    """
    Live cache of a record's current values.  The changelog is the history;
    this row must only be written in the same transaction as its entry.
    """

    __tablename__ = "entities"
    __table_args__ = (
        db.Index("idx_entity_model_live", "model_id", "is_deleted"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("data_models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data = db.Column(db.JSON, nullable=False, default=dict)
    current_state_id = db.Column(
        db.String(36),
        nullable=True,
        comment="No FK: removing a workflow leaves this pointer stale",
    )
    owner_id = db.Column(db.String(36), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    model = db.relationship("DataModel", foreign_keys=[model_id])

    @property
    def values(self) -> dict:
        """Copy of the value bag; assign a new dict back to ``data`` to change it."""
        return dict(self.data or {})

    def snapshot(self) -> dict:
        """Full state used by CREATE / DELETE changelog entries."""
        return {
            "values": self.values,
            "current_state_id": self.current_state_id,
            "owner_id": self.owner_id,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "current_state_id": self.current_state_id,
            "owner_id": self.owner_id,
            "is_deleted": bool(self.is_deleted),
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "values": self.values,
        }

    def __repr__(self):
        return f"<Entity {self.id} model={self.model_id}>"
