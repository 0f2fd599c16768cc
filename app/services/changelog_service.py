"""
Change Audit & Revert Engine.

Every entity mutation writes exactly one ChangelogEntry in the same
transaction as the entity row.  ``revert`` computes the inverse of an entry
and applies it as a *new* entry; history is never edited.

    UPDATE   → REVERT_UPDATE   re-apply each old_value
    DELETE   → REVERT_RESTORE  restore from the deletion snapshot
    RESTORE  → REVERT_DELETE   soft-delete again, snapshotting current state

CREATE and REVERT_* entries are not revertible.  There is no optimistic
lock between an entry and its revert: edits made in between are simply
overwritten for the properties the entry touched.

Usage:
    from app.services.changelog_service import list_changelog, revert

    entries = list_changelog(entity_id)
    result = revert(entry_id, user_id="u-1")
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError, StateTransitionError, ValidationError
from app.models import db
from app.models.auth import User
from app.models.changelog import (
    CHANGE_CREATE,
    CHANGE_DELETE,
    CHANGE_RESTORE,
    CHANGE_REVERT_DELETE,
    CHANGE_REVERT_RESTORE,
    CHANGE_REVERT_UPDATE,
    CHANGE_UPDATE,
    DELETED_KEY,
    OWNER_KEY,
    WORKFLOW_STATE_KEY,
    ChangelogEntry,
    write_changelog,
)
from app.models.entity import Entity
from app.models.schema import DataModel
from app.services import validation, workflow_engine
from app.services.permission import check_permission, model_permission
from app.utils.helpers import atomic, now_utc

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# Diff helpers
# ══════════════════════════════════════════════════════════════════════════════

def compute_value_diff(old_values: dict, new_values: dict) -> list[dict]:
    """One ``{property, old_value, new_value}`` per key whose value differs."""
    diffs = []
    for key in sorted(set(old_values) | set(new_values)):
        old = old_values.get(key)
        new = new_values.get(key)
        if old != new:
            diffs.append({"property": key, "old_value": old, "new_value": new})
    return diffs


def user_label(user_id: str | None) -> str | None:
    """Username for a user id, or the raw id when no such user exists."""
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return user.username if user else user_id


def owner_diff(old_owner: str | None, new_owner: str | None) -> dict:
    return {
        "property": OWNER_KEY,
        "old_value": old_owner,
        "new_value": new_owner,
        "old_label": user_label(old_owner),
        "new_label": user_label(new_owner),
    }


def deleted_diff(old_flag: bool, new_flag: bool) -> dict:
    return {"property": DELETED_KEY, "old_value": old_flag, "new_value": new_flag}


# ══════════════════════════════════════════════════════════════════════════════
# Writers (flush only; the caller owns the transaction)
# ══════════════════════════════════════════════════════════════════════════════

def record_create(entity: Entity, actor: str | None) -> ChangelogEntry:
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_CREATE,
        changes={"snapshot": entity.snapshot()},
        changed_by=actor,
    )


def record_update(entity: Entity, diffs: list[dict], actor: str | None) -> ChangelogEntry:
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_UPDATE,
        changes={"modified_properties": diffs},
        changed_by=actor,
    )


def record_delete(entity: Entity, actor: str | None) -> ChangelogEntry:
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_DELETE,
        changes={"snapshot": entity.snapshot()},
        changed_by=actor,
    )


def record_restore(entity: Entity, actor: str | None) -> ChangelogEntry:
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_RESTORE,
        changes={"status": "restored"},
        changed_by=actor,
    )


# ══════════════════════════════════════════════════════════════════════════════
# Queries
# ══════════════════════════════════════════════════════════════════════════════

def list_changelog(entity_id: str) -> list[dict]:
    """Entries for one entity, oldest first."""
    if db.session.get(Entity, entity_id) is None:
        raise NotFoundError(resource="Entity", resource_id=entity_id)
    entries = db.session.execute(
        select(ChangelogEntry)
        .where(ChangelogEntry.entity_id == entity_id)
        .order_by(ChangelogEntry.id)
    ).scalars().all()
    return [e.to_dict() for e in entries]


def get_entry(entry_id: int) -> dict:
    entry = db.session.get(ChangelogEntry, entry_id)
    if entry is None:
        raise NotFoundError(resource="ChangelogEntry", resource_id=entry_id)
    return entry.to_dict()


# ══════════════════════════════════════════════════════════════════════════════
# Revert
# ══════════════════════════════════════════════════════════════════════════════

def _check_state_belongs(model: DataModel, state_id: str | None) -> None:
    if state_id is None or model.workflow is None:
        return
    if model.workflow.state_by_id(state_id) is None:
        raise StateTransitionError(
            f"State {state_id} no longer belongs to the workflow of model '{model.name}'",
            to_state=workflow_engine.state_label(state_id),
        )


def _revert_update(entry: ChangelogEntry, entity: Entity, model: DataModel, user_id: str):
    if entity.is_deleted:
        raise ValidationError(
            "Cannot revert changes of a deleted entity; restore it first",
            details={"entity_id": entity.id},
        )

    target_values = entity.values
    target_state = entity.current_state_id
    target_owner = entity.owner_id
    for item in entry.modified_properties:
        prop = item.get("property")
        if prop == WORKFLOW_STATE_KEY:
            target_state = item.get("old_value")
        elif prop == OWNER_KEY:
            target_owner = item.get("old_value")
        elif prop == DELETED_KEY:
            continue
        elif item.get("old_value") is None:
            target_values.pop(prop, None)
        else:
            target_values[prop] = item.get("old_value")

    diffs = compute_value_diff(entity.values, target_values)
    if target_state != entity.current_state_id:
        _check_state_belongs(model, target_state)
        diffs.append(workflow_engine.state_diff(entity.current_state_id, target_state))
    if target_owner != entity.owner_id:
        diffs.append(owner_diff(entity.owner_id, target_owner))

    if not diffs:
        logger.info("Revert of entry=%s is a no-op; entity=%s already matches", entry.id, entity.id)
        return None

    validation.validate_or_raise(model, validation.load_rulesets(), target_values, entity.id)

    entity.data = target_values
    entity.current_state_id = target_state
    entity.owner_id = target_owner
    entity.updated_at = now_utc()
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_REVERT_UPDATE,
        changes={"modified_properties": diffs},
        changed_by=user_id,
        reverts_entry_id=entry.id,
    )


def _revert_delete(entry: ChangelogEntry, entity: Entity, model: DataModel, user_id: str):
    if not entity.is_deleted:
        logger.info("Revert of entry=%s is a no-op; entity=%s is already live", entry.id, entity.id)
        return None

    snapshot = entry.snapshot or {}
    values = dict(snapshot.get("values") or {})
    state_id = snapshot.get("current_state_id")
    owner_id = snapshot.get("owner_id")

    # The workflow may have been reassigned or edited since the delete; a
    # state outside the current workflow is replaced by its initial state.
    if model.workflow is not None and model.workflow.state_by_id(state_id) is None:
        initial = workflow_engine.initial_state(model.workflow)
        state_id = initial.id if initial else None

    # Coming back to life: uniqueness is checked against live siblings again.
    validation.validate_or_raise(model, validation.load_rulesets(), values, entity.id)

    diffs = compute_value_diff(entity.values, values)
    if state_id != entity.current_state_id:
        diffs.append(workflow_engine.state_diff(entity.current_state_id, state_id))
    if owner_id != entity.owner_id:
        diffs.append(owner_diff(entity.owner_id, owner_id))
    diffs.append(deleted_diff(True, False))

    entity.data = values
    entity.current_state_id = state_id
    entity.owner_id = owner_id
    entity.restore()
    entity.updated_at = now_utc()
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_REVERT_RESTORE,
        changes={"snapshot": snapshot, "modified_properties": diffs},
        changed_by=user_id,
        reverts_entry_id=entry.id,
    )


def _revert_restore(entry: ChangelogEntry, entity: Entity, model: DataModel, user_id: str):
    if entity.is_deleted:
        logger.info("Revert of entry=%s is a no-op; entity=%s is already deleted", entry.id, entity.id)
        return None

    snapshot = entity.snapshot()
    entity.soft_delete()
    entity.updated_at = entity.deleted_at
    return write_changelog(
        entity_id=entity.id,
        model_id=entity.model_id,
        change_type=CHANGE_REVERT_DELETE,
        changes={"snapshot": snapshot, "modified_properties": [deleted_diff(False, True)]},
        changed_by=user_id,
        reverts_entry_id=entry.id,
    )


_REVERTERS = {
    CHANGE_UPDATE: _revert_update,
    CHANGE_DELETE: _revert_delete,
    CHANGE_RESTORE: _revert_restore,
}


def revert(entry_id: int, user_id: str) -> dict:
    """
    Apply the inverse of a changelog entry as a new entry.

    Reverting an entry whose effect is already undone writes nothing, so
    reverting the same UPDATE twice leaves identical values.

    Returns:
        {"reverted": bool, "entry": dict | None, "entity": dict}

    Raises:
        NotFoundError: entry or entity missing.
        PermissionDenied: caller lacks ``model:<id>:revert``.
        ValidationError: entry type not revertible, or the restored values
            no longer validate.
        StateTransitionError: the old state left the model's workflow.
    """
    entry = db.session.get(ChangelogEntry, entry_id)
    if entry is None:
        raise NotFoundError(resource="ChangelogEntry", resource_id=entry_id)

    check_permission(user_id, model_permission(entry.model_id, "revert"))

    reverter = _REVERTERS.get(entry.change_type)
    if reverter is None:
        raise ValidationError(
            f"{entry.change_type} entries cannot be reverted",
            details={"entry_id": entry.id, "change_type": entry.change_type},
        )

    with atomic():
        entity = db.session.get(Entity, entry.entity_id)
        if entity is None:
            raise NotFoundError(resource="Entity", resource_id=entry.entity_id)
        model = db.session.get(DataModel, entity.model_id)
        if model is None:
            raise NotFoundError(resource="DataModel", resource_id=entity.model_id)

        new_entry = reverter(entry, entity, model, user_id)
        result = {
            "reverted": new_entry is not None,
            "entry": new_entry.to_dict() if new_entry is not None else None,
            "entity": entity.to_dict(),
        }

    if new_entry is not None:
        logger.info(
            "Changelog entry reverted entry=%s by=%s new_entry=%s entity=%s",
            entry.id, user_id, new_entry.id, entity.id,
        )
    return result
