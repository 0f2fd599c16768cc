"""
Record Studio
Wizard domain models.

Models:
    - Wizard: ordered sequence of steps creating several related entities.
    - WizardStep: one step; ``create`` makes a new entity, ``lookup`` picks
      an existing one.  ``property_mappings`` copy values (or the produced
      identity) from earlier steps.
    - WizardRun: one user's execution of a wizard.
"""

from datetime import datetime, timezone

from app.models import _uuid, db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

STEP_TYPES = {"create", "lookup"}

RUN_IN_PROGRESS = "IN_PROGRESS"
RUN_COMPLETED = "COMPLETED"

# Mapping source that stands for "the entity produced by the source step".
OBJECT_ID_SENTINEL = "__OBJECT_ID__"


class Wizard(db.Model):
    __tablename__ = "wizards"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "WizardStep",
        backref="wizard",
        cascade="all, delete-orphan",
        order_by="WizardStep.order_index",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
        }

    def __repr__(self):
        return f"<Wizard {self.name} steps={len(self.steps)}>"


class WizardStep(db.Model):
    __tablename__ = "wizard_steps"
    __table_args__ = (
        db.UniqueConstraint("wizard_id", "order_index", name="uq_wizard_step_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wizard_id = db.Column(
        db.String(36),
        db.ForeignKey("wizards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("data_models.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_type = db.Column(db.String(10), nullable=False, default="create")
    order_index = db.Column(db.Integer, nullable=False)
    instructions = db.Column(db.Text, default="")
    property_ids = db.Column(db.JSON, nullable=False, default=list)
    # [{"source_step_index": int, "source_property_id": str, "target_property_id": str}]
    property_mappings = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "step_type": self.step_type,
            "order_index": self.order_index,
            "instructions": self.instructions,
            "property_ids": list(self.property_ids or []),
            "property_mappings": list(self.property_mappings or []),
        }


class WizardRun(db.Model):
    """
    ``step_data`` maps str(step_index) to
    ``{"step_type": "create", "form_data": {...}}`` or
    ``{"step_type": "lookup", "object_id": "...", "form_data": {...}}``.

    ``version_id`` is the optimistic lock: two submissions that load the
    same version cannot both commit.
    """

    __tablename__ = "wizard_runs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wizard_id = db.Column(
        db.String(36),
        db.ForeignKey("wizards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=RUN_IN_PROGRESS)
    current_step_index = db.Column(db.Integer, nullable=False, default=-1)
    step_data = db.Column(db.JSON, nullable=False, default=dict)
    version_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    wizard = db.relationship("Wizard")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wizard_id": self.wizard_id,
            "user_id": self.user_id,
            "status": self.status,
            "current_step_index": self.current_step_index,
            "step_data": dict(self.step_data or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WizardRun {self.id} {self.status} step={self.current_step_index}>"
