"""
Workflow Engine — state machine rules for workflow-bearing models.

Stateless: every function takes the Workflow it reasons about.  Writes
happen only in ``reset_model_entities``, which the schema registry calls
inside its own transaction when a model's workflow is reassigned or a
workflow loses states.

    initial_state        → the single state flagged ``is_initial``
    is_legal_transition  → None accepts any state of the workflow,
                           otherwise the target must be a declared successor
    check_transition     → same, raising StateTransitionError with names
    resolve_state_change → decides what an entity update may do to
                           ``current_state_id``
"""

import logging

from sqlalchemy import select

from app.core.exceptions import StateTransitionError
from app.models import db
from app.models.changelog import CHANGE_UPDATE, WORKFLOW_STATE_KEY, write_changelog
from app.models.entity import Entity
from app.models.workflow import Workflow, WorkflowState
from app.utils.helpers import now_utc

logger = logging.getLogger(__name__)


def initial_state(workflow: Workflow | None) -> WorkflowState | None:
    if workflow is None:
        return None
    for state in workflow.states:
        if state.is_initial:
            return state
    return None


def state_label(state_id: str | None) -> str | None:
    """Human-readable name for a state id, or the raw id when it is stale."""
    if state_id is None:
        return None
    state = db.session.get(WorkflowState, state_id)
    return state.name if state else state_id


def is_legal_transition(workflow: Workflow, from_state_id: str | None, to_state_id: str) -> bool:
    if workflow.state_by_id(to_state_id) is None:
        return False
    if from_state_id is None:
        return True
    return to_state_id in workflow.successor_ids(from_state_id)


def check_transition(workflow: Workflow, from_state_id: str | None, to_state_id: str) -> None:
    """
    Raises:
        StateTransitionError: target unknown to the workflow, or not a
            declared successor of *from_state_id*.
    """
    target = workflow.state_by_id(to_state_id)
    if target is None:
        raise StateTransitionError(
            f"State {to_state_id} does not belong to workflow '{workflow.name}'",
            from_state=state_label(from_state_id),
            to_state=to_state_id,
        )
    if not is_legal_transition(workflow, from_state_id, to_state_id):
        from_name = state_label(from_state_id)
        raise StateTransitionError(
            f"Invalid state transition from '{from_name}' to '{target.name}'",
            from_state=from_name,
            to_state=target.name,
        )


def resolve_state_change(model, entity: Entity, requested_state_id: str | None) -> str | None:
    """
    Return the state id an update may store, or raise.

    - model without workflow: only ``None`` (or the unchanged value) is accepted
    - model with workflow: clearing the state is refused; otherwise the
      change must be a legal transition from the entity's current state
    """
    current = entity.current_state_id
    if requested_state_id == current:
        return current

    workflow = model.workflow
    if workflow is None:
        if requested_state_id is None:
            return None
        raise StateTransitionError(
            f"Model '{model.name}' has no workflow; cannot set a state",
            from_state=state_label(current),
            to_state=requested_state_id,
        )

    if requested_state_id is None:
        raise StateTransitionError(
            f"Entities of model '{model.name}' must carry a workflow state",
            from_state=state_label(current),
            to_state=None,
        )

    # A stale pointer from an earlier workflow counts as "no current state".
    from_state_id = current if workflow.state_by_id(current) is not None else None
    check_transition(workflow, from_state_id, requested_state_id)
    return requested_state_id


def state_diff(old_state_id: str | None, new_state_id: str | None) -> dict:
    """Synthetic changelog entry for a workflow state change."""
    return {
        "property": WORKFLOW_STATE_KEY,
        "old_value": old_state_id,
        "new_value": new_state_id,
        "old_label": state_label(old_state_id),
        "new_label": state_label(new_state_id),
    }


def reset_model_entities(
    model,
    workflow: Workflow,
    actor: str | None,
    *,
    keep_state_ids: set[str] | None = None,
    reason: str = "workflow_reassigned",
    labels: dict[str, str] | None = None,
) -> int:
    """
    Force entities of *model*, soft-deleted ones included, into the
    initial state of *workflow*.  Each entity whose state actually changes
    gets an UPDATE changelog entry tagged with *reason*.  Caller owns the
    transaction.

    With *keep_state_ids*, entities already in one of those states are left
    alone; a workflow edit uses this to move only entities whose state was
    removed.  *labels* names state ids that no longer resolve, so the
    changelog keeps a readable ``old_label`` for removed states.

    Returns:
        Number of entities whose state changed.
    """
    initial = initial_state(workflow)
    if initial is None:
        raise StateTransitionError(f"Workflow '{workflow.name}' has no initial state")

    entities = db.session.execute(
        select(Entity).where(Entity.model_id == model.id).order_by(Entity.created_at)
    ).scalars().all()

    changed = 0
    now = now_utc()
    for entity in entities:
        if entity.current_state_id == initial.id:
            continue
        if keep_state_ids is not None and entity.current_state_id in keep_state_ids:
            continue
        diff = state_diff(entity.current_state_id, initial.id)
        if labels and entity.current_state_id in labels:
            diff["old_label"] = labels[entity.current_state_id]
        entity.current_state_id = initial.id
        entity.updated_at = now
        write_changelog(
            entity_id=entity.id,
            model_id=model.id,
            change_type=CHANGE_UPDATE,
            changes={"modified_properties": [diff], "reason": reason},
            changed_by=actor,
            changed_at=now,
        )
        changed += 1

    logger.info(
        "Entity states reset model=%s workflow=%s reason=%s entities_reset=%d",
        model.id, workflow.id, reason, changed,
    )
    return changed
