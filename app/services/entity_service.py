"""
Entity service — direct record operations outside wizards.

Every mutation validates its full value bag, writes the entity row and its
changelog entry inside one ``atomic()`` block, then logs at INFO.
``insert_entity`` is the shared creation path: the wizard orchestrator
calls it inside its own transaction.

Batch update and batch delete apply the single-entity rules to a list of
ids in one transaction, with one changelog entry per entity touched.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from app.models import db
from app.models.entity import Entity
from app.models.schema import DataModel
from app.services import changelog_service, validation, workflow_engine
from app.services.schema_registry import get_model_or_404
from app.services.permission import check_permission, is_superuser, model_permission
from app.utils.helpers import atomic, now_utc

logger = logging.getLogger(__name__)


def get_entity_or_404(entity_id: str) -> Entity:
    entity = db.session.get(Entity, entity_id)
    if entity is None:
        raise NotFoundError(resource="Entity", resource_id=entity_id)
    return entity


def insert_entity(
    model: DataModel,
    values: dict,
    actor: str | None,
    *,
    rulesets=None,
    step: int | None = None,
) -> Entity:
    """
    Validate, persist and audit one new entity.  No commit.

    The initial workflow state is always assigned here; callers cannot
    choose it.
    """
    if rulesets is None:
        rulesets = validation.load_rulesets()
    validation.validate_or_raise(model, rulesets, values, step=step)

    initial = workflow_engine.initial_state(model.workflow)
    now = now_utc()
    entity = Entity(
        model_id=model.id,
        data=validation.normalize_values(model, values),
        current_state_id=initial.id if initial else None,
        owner_id=actor,
        created_at=now,
        updated_at=now,
    )
    db.session.add(entity)
    db.session.flush()
    changelog_service.record_create(entity, actor)
    return entity


def create_entity(model_id: str, values: dict, user_id: str) -> dict:
    """
    Create an entity of *model_id* owned by *user_id*.

    Raises:
        NotFoundError: unknown model.
        PermissionDenied: missing ``model:<id>:create``.
        ValidationError: first failing property.
    """
    model = get_model_or_404(model_id)
    check_permission(user_id, model_permission(model.id, "create"))

    with atomic():
        entity = insert_entity(model, values or {}, user_id)
        result = entity.to_dict()

    logger.info("Entity created id=%s model=%s by=%s", entity.id, model.id, user_id)
    return result


def get_entity(entity_id: str) -> dict:
    return get_entity_or_404(entity_id).to_dict()


def list_entities(model_id: str, *, include_deleted: bool = False) -> list[dict]:
    model = get_model_or_404(model_id)
    stmt = select(Entity).where(Entity.model_id == model.id)
    if not include_deleted:
        stmt = stmt.where(Entity.active_clause())
    stmt = stmt.order_by(Entity.created_at, Entity.id)
    return [e.to_dict() for e in db.session.execute(stmt).scalars().all()]


_UNSET = object()


def _apply_update(
    model: DataModel,
    entity: Entity,
    user_id: str,
    rulesets,
    *,
    values: dict | None,
    current_state_id=_UNSET,
    owner_id=_UNSET,
) -> list[dict]:
    """Validate and apply one partial update; no commit.  Returns the diffs audited."""
    merged = entity.values
    for key, value in (values or {}).items():
        merged[key] = value
    merged = {k: v for k, v in merged.items() if v is not None}

    validation.validate_or_raise(model, rulesets, merged, entity.id)
    new_values = validation.normalize_values(model, merged)

    diffs = changelog_service.compute_value_diff(entity.values, new_values)
    if current_state_id is not _UNSET:
        new_state = workflow_engine.resolve_state_change(model, entity, current_state_id)
        if new_state != entity.current_state_id:
            diffs.append(workflow_engine.state_diff(entity.current_state_id, new_state))
            entity.current_state_id = new_state
    if owner_id is not _UNSET and owner_id != entity.owner_id:
        diffs.append(changelog_service.owner_diff(entity.owner_id, owner_id))
        entity.owner_id = owner_id

    if diffs:
        entity.data = new_values
        entity.updated_at = now_utc()
        changelog_service.record_update(entity, diffs, user_id)
    return diffs


def update_entity(
    entity_id: str,
    user_id: str,
    *,
    values: dict | None = None,
    current_state_id=_UNSET,
    owner_id=_UNSET,
) -> dict:
    """
    Apply a partial update: *values* are merged over the stored bag
    (``None`` clears a property).  State changes go through the workflow
    engine; owner changes need a superuser.

    Returns the updated entity; when nothing changed no entry is written.
    """
    entity = get_entity_or_404(entity_id)
    if entity.is_deleted:
        raise ValidationError("Cannot edit a deleted entity", details={"entity_id": entity.id})
    model = get_model_or_404(entity.model_id)
    check_permission(user_id, model_permission(model.id, "edit"))

    if owner_id is not _UNSET and owner_id != entity.owner_id and not is_superuser(user_id):
        raise PermissionDenied(user_id, "superuser")

    with atomic():
        diffs = _apply_update(
            model, entity, user_id, validation.load_rulesets(),
            values=values, current_state_id=current_state_id, owner_id=owner_id,
        )
        result = entity.to_dict()

    if diffs:
        logger.info(
            "Entity updated id=%s by=%s properties=%s",
            entity.id, user_id, [d["property"] for d in diffs],
        )
    return result


def _unique_ids(entity_ids) -> list[str]:
    if (
        not isinstance(entity_ids, (list, tuple))
        or not entity_ids
        or not all(isinstance(i, str) and i for i in entity_ids)
    ):
        raise ValidationError("entity_ids must be a non-empty list of ids", field="entity_ids")
    return list(dict.fromkeys(entity_ids))


def batch_update_entities(
    model_id: str,
    entity_ids: list[str],
    user_id: str,
    *,
    values: dict | None = None,
    current_state_id=_UNSET,
) -> dict:
    """
    Apply the same partial update to several entities of one model.

    All or nothing: one transaction, one UPDATE entry per entity that
    actually changed.  Each entity is validated against the others'
    already applied values, so a unique value cannot be spread over the
    batch.

    Returns:
        {"updated": int, "entities": [dict, ...]}

    Raises:
        NotFoundError: unknown model or entity.
        ValidationError: entity of another model, deleted entity, or a
            failing property (``details.entity_id`` names the entity).
        StateTransitionError: the state change is illegal for an entity.
    """
    ids = _unique_ids(entity_ids)
    if not values and current_state_id is _UNSET:
        raise ValidationError("Nothing to update; give values or current_state_id")
    model = get_model_or_404(model_id)
    check_permission(user_id, model_permission(model.id, "edit"))

    updated = 0
    with atomic():
        rulesets = validation.load_rulesets()
        entities = []
        for entity_id in ids:
            entity = get_entity_or_404(entity_id)
            if entity.model_id != model.id:
                raise ValidationError(
                    f"Entity {entity.id} does not belong to model '{model.name}'",
                    details={"entity_id": entity.id},
                )
            if entity.is_deleted:
                raise ValidationError("Cannot edit a deleted entity", details={"entity_id": entity.id})
            try:
                diffs = _apply_update(
                    model, entity, user_id, rulesets,
                    values=values, current_state_id=current_state_id,
                )
            except ValidationError as exc:
                exc.details.setdefault("entity_id", entity.id)
                raise
            if diffs:
                updated += 1
            entities.append(entity)
        result = {"updated": updated, "entities": [e.to_dict() for e in entities]}

    logger.info(
        "Entities batch-updated model=%s by=%s updated=%d of %d",
        model.id, user_id, updated, len(ids),
    )
    return result


def batch_delete_entities(model_id: str, entity_ids: list[str], user_id: str) -> dict:
    """
    Soft-delete several entities of one model in one transaction.

    Ids that are unknown, belong to another model, or are already deleted
    are skipped and reported, not treated as errors.

    Returns:
        {"deleted": int, "skipped": [id, ...], "entities": [dict, ...]}
    """
    ids = _unique_ids(entity_ids)
    model = get_model_or_404(model_id)
    check_permission(user_id, model_permission(model.id, "delete"))

    skipped = []
    with atomic():
        deleted = []
        for entity_id in ids:
            entity = db.session.get(Entity, entity_id)
            if entity is None or entity.model_id != model.id or entity.is_deleted:
                skipped.append(entity_id)
                continue
            changelog_service.record_delete(entity, user_id)
            entity.soft_delete()
            entity.updated_at = entity.deleted_at
            deleted.append(entity)
        result = {
            "deleted": len(deleted),
            "skipped": skipped,
            "entities": [e.to_dict() for e in deleted],
        }

    logger.info(
        "Entities batch-deleted model=%s by=%s deleted=%d skipped=%d",
        model.id, user_id, result["deleted"], len(skipped),
    )
    return result


def delete_entity(entity_id: str, user_id: str) -> dict:
    """Soft-delete; the DELETE entry snapshots the entity first."""
    entity = get_entity_or_404(entity_id)
    check_permission(user_id, model_permission(entity.model_id, "delete"))
    if entity.is_deleted:
        raise ValidationError("Entity is already deleted", details={"entity_id": entity.id})

    with atomic():
        changelog_service.record_delete(entity, user_id)
        entity.soft_delete()
        entity.updated_at = entity.deleted_at
        result = entity.to_dict()

    logger.info("Entity deleted id=%s by=%s", entity.id, user_id)
    return result


def restore_entity(entity_id: str, user_id: str) -> dict:
    """Bring a soft-deleted entity back; unique values are re-checked first."""
    entity = get_entity_or_404(entity_id)
    check_permission(user_id, model_permission(entity.model_id, "delete"))
    if not entity.is_deleted:
        raise ValidationError("Entity is not deleted", details={"entity_id": entity.id})
    model = get_model_or_404(entity.model_id)

    with atomic():
        validation.validate_or_raise(model, validation.load_rulesets(), entity.values, entity.id)
        entity.restore()
        entity.updated_at = now_utc()
        changelog_service.record_restore(entity, user_id)
        result = entity.to_dict()

    logger.info("Entity restored id=%s by=%s", entity.id, user_id)
    return result


def validate_values(model_id: str, values: dict, entity_id: str | None = None) -> dict:
    """Collect-all validation preview; writes nothing."""
    model = get_model_or_404(model_id)
    result = validation.validate(model, validation.load_rulesets(), values or {}, entity_id)
    return result.to_dict()
