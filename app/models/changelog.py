"""
Record Studio
Changelog domain model.

Models:
    - ChangelogEntry: immutable, append-only record of one entity mutation.
      Holds enough detail to compute and apply its inverse.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CHANGE_CREATE = "CREATE"
CHANGE_UPDATE = "UPDATE"
CHANGE_DELETE = "DELETE"
CHANGE_RESTORE = "RESTORE"
CHANGE_REVERT_UPDATE = "REVERT_UPDATE"
CHANGE_REVERT_RESTORE = "REVERT_RESTORE"   # undoes a DELETE
CHANGE_REVERT_DELETE = "REVERT_DELETE"     # undoes a RESTORE

CHANGE_TYPES = {
    CHANGE_CREATE,
    CHANGE_UPDATE,
    CHANGE_DELETE,
    CHANGE_RESTORE,
    CHANGE_REVERT_UPDATE,
    CHANGE_REVERT_RESTORE,
    CHANGE_REVERT_DELETE,
}

# Synthetic property names used inside UPDATE diffs.
WORKFLOW_STATE_KEY = "__workflow_state__"
OWNER_KEY = "__owner__"
DELETED_KEY = "__deleted__"


class ChangelogEntry(db.Model):
    """
    One row per mutation.  ``changes_json`` carries:

    - CREATE / DELETE / REVERT_DELETE: ``{"snapshot": {...}}``
    - UPDATE / REVERT_*: ``{"modified_properties": [{property, old_value, new_value, ...}]}``
    - RESTORE: ``{"status": "restored"}``
    """

    __tablename__ = "changelog_entries"
    __table_args__ = (
        db.Index("idx_changelog_entity", "entity_id", "id"),
        db.Index("idx_changelog_model", "model_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.String(36),
        db.ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    model_id = db.Column(db.String(36), nullable=False)
    change_type = db.Column(db.String(20), nullable=False)
    changes_json = db.Column(db.Text, nullable=False, default="{}")
    changed_by = db.Column(db.String(36), nullable=True)
    changed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    reverts_entry_id = db.Column(
        db.Integer,
        db.ForeignKey("changelog_entries.id"),
        nullable=True,
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def changes(self) -> dict:
        """Deserialise *changes_json* to a Python dict."""
        try:
            return json.loads(self.changes_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def modified_properties(self) -> list[dict]:
        return list(self.changes.get("modified_properties") or [])

    @property
    def snapshot(self) -> dict | None:
        return self.changes.get("snapshot")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "model_id": self.model_id,
            "change_type": self.change_type,
            "changes": self.changes,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
            "reverts_entry_id": self.reverts_entry_id,
        }

    def __repr__(self):
        return f"<ChangelogEntry {self.id}: {self.change_type} on {self.entity_id}>"


@event.listens_for(ChangelogEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"Changelog entry {target.id} is immutable")


@event.listens_for(ChangelogEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ValueError(f"Changelog entry {target.id} cannot be deleted")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_changelog(
    *,
    entity_id: str,
    model_id: str,
    change_type: str,
    changes: dict | None = None,
    changed_by: str | None = None,
    reverts_entry_id: int | None = None,
    changed_at: datetime | None = None,
) -> ChangelogEntry:
    """
    Append a single changelog row.  Uses ``flush`` so callers keep
    transaction control: the entry commits or rolls back together with
    the entity write it describes.
    """
    if change_type not in CHANGE_TYPES:
        raise ValueError(f"Unknown change type: {change_type}")

    entry = ChangelogEntry(
        entity_id=str(entity_id),
        model_id=str(model_id),
        change_type=change_type,
        changes_json=json.dumps(changes or {}, default=str),
        changed_by=changed_by,
        reverts_entry_id=reverts_entry_id,
        changed_at=changed_at or datetime.now(timezone.utc),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
