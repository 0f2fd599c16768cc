"""
Record Studio
Workflow domain models.

Models:
    - Workflow: named state machine attachable to a DataModel.
    - WorkflowState: one node; exactly one per workflow has ``is_initial``.
    - WorkflowTransition: directed edge from_state → to_state.
"""

from datetime import datetime, timezone

from app.models import _uuid, db


def _utcnow():
    return datetime.now(timezone.utc)


class Workflow(db.Model):
    __tablename__ = "workflows"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    states = db.relationship(
        "WorkflowState",
        backref="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowState.order_index",
    )
    transitions = db.relationship(
        "WorkflowTransition",
        backref="workflow",
        cascade="all, delete-orphan",
    )

    def state_by_id(self, state_id: str | None):
        if state_id is None:
            return None
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def successor_ids(self, state_id: str) -> set[str]:
        return {t.to_state_id for t in self.transitions if t.from_state_id == state_id}

    def to_dict(self) -> dict:
        initial = next((s for s in self.states if s.is_initial), None)
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "initial_state_id": initial.id if initial else None,
            "states": [
                {
                    **s.to_dict(),
                    "successor_state_ids": sorted(self.successor_ids(s.id)),
                }
                for s in self.states
            ],
        }

    def __repr__(self):
        return f"<Workflow {self.name}>"


class WorkflowState(db.Model):
    __tablename__ = "workflow_states"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "name", name="uq_workflow_state_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    is_initial = db.Column(db.Boolean, nullable=False, default=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "is_initial": self.is_initial,
        }

    def __repr__(self):
        return f"<WorkflowState {self.name}{' *' if self.is_initial else ''}>"


class WorkflowTransition(db.Model):
    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.UniqueConstraint("from_state_id", "to_state_id", name="uq_workflow_transition"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_state_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_state_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False,
    )
