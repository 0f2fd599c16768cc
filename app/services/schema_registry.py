"""
Schema Registry — Models, Properties, Validation Rulesets and Workflows.

Centralises every ORM query and mutation for schema definitions so that
blueprints remain HTTP-only.  All mutations need ``admin:manage_schema``
and run inside ``atomic()``.

Reassigning a model's workflow resets every entity of that model to the
new workflow's initial state in the same transaction.  Editing a workflow
moves only entities whose state was removed.  Clearing the workflow, or
deleting it, leaves existing state pointers untouched.

Rulesets and models can only be deleted while nothing references them.
"""

import logging
import re

from sqlalchemy import func, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.entity import Entity
from app.models.schema import (
    PROPERTY_TYPES,
    RELATIONSHIP_TYPES,
    DataModel,
    ModelProperty,
    ValidationRuleset,
)
from app.models.wizard import WizardStep
from app.models.workflow import Workflow, WorkflowState, WorkflowTransition
from app.services import validation, workflow_engine
from app.services.permission import MANAGE_SCHEMA, check_permission
from app.utils.helpers import atomic

logger = logging.getLogger(__name__)


def _require_name(data: dict, field: str = "name") -> str:
    name = (data.get(field) or "").strip()
    if not name:
        raise ValidationError(f"{field} is required", field=field)
    return name


def _compile_or_raise(pattern) -> str:
    if not isinstance(pattern, str) or not pattern:
        raise ValidationError("regex_pattern is required", field="regex_pattern")
    try:
        validation.compile_pattern(pattern)
    except re.error as exc:
        raise ValidationError(f"Invalid regex pattern: {exc}", field="regex_pattern") from exc
    return pattern


# ──────────────────────────────────────────────────────────────────────────────
# Validation Rulesets
# ──────────────────────────────────────────────────────────────────────────────

def get_ruleset_or_404(ruleset_id: str) -> ValidationRuleset:
    ruleset = db.session.get(ValidationRuleset, ruleset_id)
    if ruleset is None:
        raise NotFoundError(resource="ValidationRuleset", resource_id=ruleset_id)
    return ruleset


def list_rulesets() -> list[dict]:
    rows = db.session.execute(
        select(ValidationRuleset).order_by(ValidationRuleset.name)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def get_ruleset(ruleset_id: str) -> dict:
    return get_ruleset_or_404(ruleset_id).to_dict()


def create_ruleset(data: dict, user_id: str) -> dict:
    """Create a ruleset; the pattern must compile."""
    check_permission(user_id, MANAGE_SCHEMA)
    name = _require_name(data)
    pattern = _compile_or_raise(data.get("regex_pattern"))
    if ValidationRuleset.query.filter_by(name=name).first():
        raise ConflictError("ValidationRuleset", "name", name)

    with atomic():
        ruleset = ValidationRuleset(
            name=name,
            description=data.get("description") or "",
            regex_pattern=pattern,
        )
        db.session.add(ruleset)
        db.session.flush()
        result = ruleset.to_dict()

    logger.info("ValidationRuleset created id=%s name=%s", ruleset.id, name)
    return result


def update_ruleset(ruleset_id: str, data: dict, user_id: str) -> dict:
    check_permission(user_id, MANAGE_SCHEMA)
    ruleset = get_ruleset_or_404(ruleset_id)

    if "name" in data:
        name = _require_name(data)
        clash = ValidationRuleset.query.filter_by(name=name).first()
        if clash is not None and clash.id != ruleset.id:
            raise ConflictError("ValidationRuleset", "name", name)
    if "regex_pattern" in data:
        _compile_or_raise(data["regex_pattern"])

    with atomic():
        if "name" in data:
            ruleset.name = data["name"].strip()
        if "description" in data:
            ruleset.description = data["description"] or ""
        if "regex_pattern" in data:
            ruleset.regex_pattern = data["regex_pattern"]
        result = ruleset.to_dict()

    logger.info("ValidationRuleset updated id=%s", ruleset.id)
    return result


def delete_ruleset(ruleset_id: str, user_id: str) -> None:
    """
    Delete a ruleset.

    Raises:
        ValidationError: a property still references the ruleset; the
            referencing properties are listed under ``in_use_by``.
    """
    check_permission(user_id, MANAGE_SCHEMA)
    ruleset = get_ruleset_or_404(ruleset_id)

    users = db.session.execute(
        select(ModelProperty)
        .where(ModelProperty.validation_ruleset_id == ruleset.id)
        .order_by(ModelProperty.model_id, ModelProperty.order_index)
    ).scalars().all()
    if users:
        raise ValidationError(
            f"Ruleset '{ruleset.name}' is used by {len(users)} property definition(s)",
            field="validation_ruleset_id",
            details={"in_use_by": [{"model_id": p.model_id, "property": p.name} for p in users]},
        )

    with atomic():
        db.session.delete(ruleset)

    logger.info("ValidationRuleset deleted id=%s", ruleset_id)


# ──────────────────────────────────────────────────────────────────────────────
# Models & Properties
# ──────────────────────────────────────────────────────────────────────────────

def get_model_or_404(model_id: str) -> DataModel:
    model = db.session.get(DataModel, model_id)
    if model is None:
        raise NotFoundError(resource="DataModel", resource_id=model_id)
    return model


def get_workflow_or_404(workflow_id: str) -> Workflow:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise NotFoundError(resource="Workflow", resource_id=workflow_id)
    return workflow


def _optional_float(data: dict, field: str) -> float | None:
    value = data.get(field)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", field=field) from exc


def _build_property(data: dict, order_index: int, model_id: str | None = None) -> ModelProperty:
    """Check one property definition and return an unsaved ModelProperty."""
    name = _require_name(data)
    ptype = data.get("type") or "string"
    if ptype not in PROPERTY_TYPES:
        raise ValidationError(
            f"Invalid property type '{ptype}'. Must be one of: {sorted(PROPERTY_TYPES)}",
            field="type",
        )

    prop = ModelProperty(
        name=name,
        type=ptype,
        required=bool(data.get("required", False)),
        order_index=data.get("order_index", order_index),
        is_unique=False,
    )
    if model_id is not None:
        prop.model_id = model_id

    if ptype == "string":
        prop.is_unique = bool(data.get("is_unique", False))
        ruleset_id = data.get("validation_ruleset_id")
        if ruleset_id:
            get_ruleset_or_404(ruleset_id)
            prop.validation_ruleset_id = ruleset_id
    elif ptype == "number":
        prop.min_value = _optional_float(data, "min_value")
        prop.max_value = _optional_float(data, "max_value")
        if (
            prop.min_value is not None
            and prop.max_value is not None
            and prop.min_value > prop.max_value
        ):
            raise ValidationError("min_value cannot exceed max_value", field="min_value")
    elif ptype == "relationship":
        related_id = data.get("related_model_id")
        if not related_id:
            raise ValidationError("related_model_id is required", field="related_model_id")
        get_model_or_404(related_id)
        rel_type = data.get("relationship_type") or "one"
        if rel_type not in RELATIONSHIP_TYPES:
            raise ValidationError(
                f"relationship_type must be one of: {sorted(RELATIONSHIP_TYPES)}",
                field="relationship_type",
            )
        prop.related_model_id = related_id
        prop.relationship_type = rel_type

    return prop


def list_models() -> list[dict]:
    rows = db.session.execute(select(DataModel).order_by(DataModel.name)).scalars().all()
    return [m.to_dict() for m in rows]


def get_model(model_id: str) -> dict:
    return get_model_or_404(model_id).to_dict()


def create_model(data: dict, user_id: str) -> dict:
    """
    Create a model with its properties.

    Args:
        data: {"name", "description"?, "workflow_id"?, "properties": [...]}.
    """
    check_permission(user_id, MANAGE_SCHEMA)
    name = _require_name(data)
    if DataModel.query.filter_by(name=name).first():
        raise ConflictError("DataModel", "name", name)

    workflow_id = data.get("workflow_id")
    if workflow_id:
        get_workflow_or_404(workflow_id)

    specs = data.get("properties") or []
    props = [_build_property(spec, index) for index, spec in enumerate(specs)]
    names = [p.name for p in props]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate property names: {duplicates}", field="properties")

    with atomic():
        model = DataModel(
            name=name,
            description=data.get("description") or "",
            workflow_id=workflow_id or None,
        )
        model.properties = props
        db.session.add(model)
        db.session.flush()
        result = model.to_dict()

    logger.info("DataModel created id=%s name=%s properties=%d", model.id, name, len(props))
    return result


def update_model(model_id: str, data: dict, user_id: str) -> dict:
    """
    Update name / description / workflow.

    A changed non-null ``workflow_id`` resets every entity of the model
    to the new workflow's initial state (audited per entity).
    """
    check_permission(user_id, MANAGE_SCHEMA)
    model = get_model_or_404(model_id)

    if "name" in data:
        name = _require_name(data)
        clash = DataModel.query.filter_by(name=name).first()
        if clash is not None and clash.id != model.id:
            raise ConflictError("DataModel", "name", name)

    new_workflow = None
    reassign = "workflow_id" in data and (data["workflow_id"] or None) != model.workflow_id
    if reassign and data["workflow_id"]:
        new_workflow = get_workflow_or_404(data["workflow_id"])

    with atomic():
        if "name" in data:
            model.name = data["name"].strip()
        if "description" in data:
            model.description = data["description"] or ""
        if reassign:
            model.workflow = new_workflow
            db.session.flush()
            if new_workflow is not None:
                workflow_engine.reset_model_entities(model, new_workflow, user_id)
            else:
                logger.info("Workflow removed from model=%s; entity states left as is", model.id)
        result = model.to_dict()

    logger.info("DataModel updated id=%s", model.id)
    return result


def add_property(model_id: str, data: dict, user_id: str) -> dict:
    check_permission(user_id, MANAGE_SCHEMA)
    model = get_model_or_404(model_id)
    next_index = max((p.order_index for p in model.properties), default=-1) + 1
    prop = _build_property(data, next_index, model_id=model.id)
    if model.property_by_name(prop.name) is not None:
        raise ConflictError("ModelProperty", "name", prop.name)

    with atomic():
        model.properties.append(prop)
        db.session.flush()
        result = prop.to_dict()

    logger.info("ModelProperty added id=%s model=%s name=%s", prop.id, model.id, prop.name)
    return result


def delete_model(model_id: str, user_id: str) -> None:
    """
    Delete a model and its property definitions.

    Only models nothing depends on can go: no entities (soft-deleted ones
    included, since their change history would go with them), no
    relationship property of another model pointing here, no wizard step
    using it.

    Raises:
        ValidationError: the model is still in use.
    """
    check_permission(user_id, MANAGE_SCHEMA)
    model = get_model_or_404(model_id)

    entity_count = db.session.scalar(
        select(func.count()).select_from(Entity).where(Entity.model_id == model.id)
    )
    if entity_count:
        raise ValidationError(
            f"Model '{model.name}' still has {entity_count} entities",
            details={"model_id": model.id, "entity_count": entity_count},
        )

    referencing = db.session.execute(
        select(ModelProperty).where(
            ModelProperty.related_model_id == model.id,
            ModelProperty.model_id != model.id,
        )
    ).scalars().all()
    if referencing:
        raise ValidationError(
            f"Model '{model.name}' is the target of relationship properties",
            details={"referenced_by": [
                {"model_id": p.model_id, "property": p.name} for p in referencing
            ]},
        )

    wizard_ids = sorted(set(db.session.execute(
        select(WizardStep.wizard_id).where(WizardStep.model_id == model.id)
    ).scalars().all()))
    if wizard_ids:
        raise ValidationError(
            f"Model '{model.name}' is used by wizard steps",
            details={"wizard_ids": wizard_ids},
        )

    name = model.name
    with atomic():
        db.session.delete(model)

    logger.info("DataModel deleted id=%s name=%s", model_id, name)


# ──────────────────────────────────────────────────────────────────────────────
# Workflows
# ──────────────────────────────────────────────────────────────────────────────

def list_workflows() -> list[dict]:
    rows = db.session.execute(select(Workflow).order_by(Workflow.name)).scalars().all()
    return [w.to_dict() for w in rows]


def get_workflow(workflow_id: str) -> dict:
    return get_workflow_or_404(workflow_id).to_dict()


def _check_state_specs(specs) -> list[str]:
    """Shared checks for a submitted state list; returns the stripped names."""
    if not isinstance(specs, list) or not specs:
        raise ValidationError("A workflow needs at least one state", field="states")
    if not all(isinstance(s, dict) for s in specs):
        raise ValidationError("Each state must be an object", field="states")
    state_names = [_require_name(s) for s in specs]
    if len(set(state_names)) != len(state_names):
        raise ValidationError("State names must be unique within a workflow", field="states")
    initial_count = sum(1 for s in specs if s.get("is_initial"))
    if initial_count != 1:
        raise ValidationError(
            f"A workflow must have exactly one initial state (found {initial_count})",
            field="states",
        )
    for spec in specs:
        for successor in spec.get("successor_names") or []:
            if successor not in state_names:
                raise ValidationError(
                    f"State '{spec['name']}' lists unknown successor '{successor}'",
                    field="states",
                )
    return state_names


def _add_transitions(workflow: Workflow, specs, by_name: dict) -> None:
    seen = set()
    for spec in specs:
        source = by_name[spec["name"].strip()]
        for successor in spec.get("successor_names") or []:
            pair = (source.id, by_name[successor].id)
            if pair in seen:
                continue
            seen.add(pair)
            workflow.transitions.append(
                WorkflowTransition(from_state_id=pair[0], to_state_id=pair[1])
            )


def create_workflow(data: dict, user_id: str) -> dict:
    """
    Create a workflow from a list of states.

    Args:
        data: {"name", "description"?, "states": [
                  {"name", "description"?, "is_initial"?, "successor_names"?: [...]}]}

    Raises:
        ValidationError: no states, not exactly one initial state,
            duplicate state names, or an unknown successor name.
    """
    check_permission(user_id, MANAGE_SCHEMA)
    name = _require_name(data)
    if Workflow.query.filter_by(name=name).first():
        raise ConflictError("Workflow", "name", name)

    specs = data.get("states") or []
    _check_state_specs(specs)

    with atomic():
        workflow = Workflow(name=name, description=data.get("description") or "")
        db.session.add(workflow)
        by_name = {}
        for index, spec in enumerate(specs):
            state = WorkflowState(
                name=spec["name"].strip(),
                description=spec.get("description") or "",
                is_initial=bool(spec.get("is_initial")),
                order_index=index,
            )
            workflow.states.append(state)
            by_name[state.name] = state
        db.session.flush()

        _add_transitions(workflow, specs, by_name)
        db.session.flush()
        result = workflow.to_dict()

    logger.info("Workflow created id=%s name=%s states=%d", workflow.id, name, len(specs))
    return result


def _replace_states(workflow: Workflow, specs, user_id: str) -> int:
    """
    Make the workflow's states match *specs*.  Caller owns the transaction.

    A spec carrying the ``id`` of an existing state updates that state;
    one without an id adds a state; existing states left out are removed.
    Transitions are rebuilt from ``successor_names``.  Entities of models
    using the workflow whose state was removed move to the initial state.

    Returns:
        Number of entities moved.
    """
    labels = {s.id: s.name for s in workflow.states}
    existing = {s.id: s for s in workflow.states}
    kept_ids = {spec["id"] for spec in specs if spec.get("id")}

    workflow.transitions.clear()
    db.session.flush()

    removed = [s for s in workflow.states if s.id not in kept_ids]
    for state in removed:
        workflow.states.remove(state)
    db.session.flush()

    # Park renamed states under their id first so swapped names never collide.
    for spec in specs:
        state = existing.get(spec.get("id"))
        if state is not None and state.name != spec["name"].strip():
            state.name = state.id
    db.session.flush()

    by_name = {}
    for index, spec in enumerate(specs):
        state = existing.get(spec.get("id"))
        if state is None:
            state = WorkflowState()
            workflow.states.append(state)
        state.name = spec["name"].strip()
        state.description = spec.get("description") or ""
        state.is_initial = bool(spec.get("is_initial"))
        state.order_index = index
        by_name[state.name] = state
    db.session.flush()

    _add_transitions(workflow, specs, by_name)
    db.session.flush()

    state_ids = {s.id for s in by_name.values()}
    moved = 0
    for model in DataModel.query.filter_by(workflow_id=workflow.id).all():
        moved += workflow_engine.reset_model_entities(
            model, workflow, user_id,
            keep_state_ids=state_ids,
            reason="workflow_state_removed",
            labels=labels,
        )
    db.session.expire(workflow, ["states", "transitions"])
    return moved


def update_workflow(workflow_id: str, data: dict, user_id: str) -> dict:
    """
    Update name / description and, when ``states`` is given, replace the
    state graph.

    Args:
        data: {"name"?, "description"?, "states"?: [
                  {"id"?, "name", "description"?, "is_initial"?, "successor_names"?: [...]}]}

    Raises:
        ConflictError: another workflow already has the name.
        ValidationError: same state checks as ``create_workflow``, or a
            state id that does not belong to this workflow.
    """
    check_permission(user_id, MANAGE_SCHEMA)
    workflow = get_workflow_or_404(workflow_id)

    if "name" in data:
        name = _require_name(data)
        clash = Workflow.query.filter_by(name=name).first()
        if clash is not None and clash.id != workflow.id:
            raise ConflictError("Workflow", "name", name)

    specs = None
    if "states" in data:
        specs = data.get("states") or []
        _check_state_specs(specs)
        own_ids = {s.id for s in workflow.states}
        given_ids = [spec["id"] for spec in specs if spec.get("id")]
        if not all(isinstance(i, str) for i in given_ids):
            raise ValidationError("State ids must be strings", field="states")
        if len(set(given_ids)) != len(given_ids):
            raise ValidationError("A state id may appear only once", field="states")
        for state_id in given_ids:
            if state_id not in own_ids:
                raise ValidationError(
                    f"State {state_id} does not belong to workflow '{workflow.name}'",
                    field="states",
                )

    moved = 0
    with atomic():
        if "name" in data:
            workflow.name = data["name"].strip()
        if "description" in data:
            workflow.description = data["description"] or ""
        if specs is not None:
            moved = _replace_states(workflow, specs, user_id)
        result = workflow.to_dict()

    logger.info("Workflow updated id=%s entities_moved=%d", workflow.id, moved)
    return result


def delete_workflow(workflow_id: str, user_id: str) -> None:
    """Delete a workflow.  Models using it lose it; entity state pointers go stale."""
    check_permission(user_id, MANAGE_SCHEMA)
    workflow = get_workflow_or_404(workflow_id)

    with atomic():
        models = DataModel.query.filter_by(workflow_id=workflow.id).all()
        for model in models:
            model.workflow = None
        db.session.delete(workflow)

    logger.info("Workflow deleted id=%s detached_models=%d", workflow_id, len(models))
