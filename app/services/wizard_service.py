"""
Wizard Orchestrator.

Drives a multi-step run that ends by creating (or referencing) several
linked entities in one transaction.

Step submission rules:
  - ``step_index`` must equal ``current_step_index + 1``; a run starts at -1
  - intermediate ``create`` steps are only stored; ``lookup`` steps resolve
    the referenced entity's values right away
  - the final step commits everything: Phase A resolves every lookup,
    Phase B walks the steps in order, merging mapped values from earlier
    steps and validating each new entity first-failure
  - any failure rolls back the whole submission; the run keeps its prior
    position

Mappings always point backwards (checked when the wizard is defined), so
one forward pass resolves them.  ``WizardRun.version_id`` turns a lost race
between two submissions into a SequenceError.

Usage:
    from app.services.wizard_service import start_run, submit_step

    run = start_run(wizard_id, user_id="u-1")
    submit_step(run["id"], 0, "create", "u-1", form_data={"name": "ACME"})
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    SequenceError,
    ValidationError,
)
from app.models import db
from app.models.entity import Entity
from app.models.schema import DataModel
from app.models.wizard import (
    OBJECT_ID_SENTINEL,
    RUN_COMPLETED,
    RUN_IN_PROGRESS,
    STEP_TYPES,
    Wizard,
    WizardRun,
    WizardStep,
)
from app.services import entity_service, validation
from app.services.permission import (
    MANAGE_WIZARDS,
    RUN_OVERRIDE,
    check_permission,
    has_permission,
    model_permission,
)
from app.utils.helpers import atomic, now_utc

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Definition
# ──────────────────────────────────────────────────────────────────────────────

def validate_wizard_definition(steps: list[dict]) -> list[WizardStep]:
    """
    Check a list of step definitions and return unsaved WizardStep rows.

    Raises:
        ValidationError: attributed to the offending step index.
        NotFoundError: a step references an unknown model.
    """
    if not steps:
        raise ValidationError("A wizard needs at least one step", field="steps")

    models: list[DataModel] = []
    rows: list[WizardStep] = []
    for index, spec in enumerate(steps):
        model_id = spec.get("model_id")
        if not model_id:
            raise ValidationError("model_id is required", field="model_id", step=index)
        model = db.session.get(DataModel, model_id)
        if model is None:
            raise NotFoundError(resource="DataModel", resource_id=model_id)
        models.append(model)

        step_type = spec.get("step_type") or "create"
        if step_type not in STEP_TYPES:
            raise ValidationError(
                f"Invalid step_type '{step_type}'. Must be one of: {sorted(STEP_TYPES)}",
                field="step_type", step=index,
            )

        property_ids = list(spec.get("property_ids") or [])
        for property_id in property_ids:
            if model.property_by_id(property_id) is None:
                raise ValidationError(
                    f"Property {property_id} does not belong to model '{model.name}'",
                    field="property_ids", step=index,
                )

        mappings = list(spec.get("property_mappings") or [])
        if step_type == "lookup" and mappings:
            raise ValidationError(
                "Lookup steps cannot carry property mappings",
                field="property_mappings", step=index,
            )
        clean_mappings = []
        for mapping in mappings:
            source_index = mapping.get("source_step_index")
            if not isinstance(source_index, int) or isinstance(source_index, bool) \
                    or not 0 <= source_index < index:
                raise ValidationError(
                    f"Mapping source step {source_index} must be an earlier step than {index}",
                    field="property_mappings", step=index,
                )
            source_property_id = mapping.get("source_property_id")
            if source_property_id != OBJECT_ID_SENTINEL \
                    and models[source_index].property_by_id(source_property_id) is None:
                raise ValidationError(
                    f"Source property {source_property_id} does not belong to step "
                    f"{source_index}'s model '{models[source_index].name}'",
                    field="property_mappings", step=index,
                )
            target_property_id = mapping.get("target_property_id")
            if model.property_by_id(target_property_id) is None:
                raise ValidationError(
                    f"Target property {target_property_id} does not belong to model '{model.name}'",
                    field="property_mappings", step=index,
                )
            clean_mappings.append({
                "source_step_index": source_index,
                "source_property_id": source_property_id,
                "target_property_id": target_property_id,
            })

        rows.append(WizardStep(
            model_id=model.id,
            step_type=step_type,
            order_index=index,
            instructions=spec.get("instructions") or "",
            property_ids=property_ids,
            property_mappings=clean_mappings,
        ))
    return rows


def get_wizard_or_404(wizard_id: str) -> Wizard:
    wizard = db.session.get(Wizard, wizard_id)
    if wizard is None:
        raise NotFoundError(resource="Wizard", resource_id=wizard_id)
    return wizard


def list_wizards() -> list[dict]:
    rows = db.session.execute(select(Wizard).order_by(Wizard.name)).scalars().all()
    return [w.to_dict() for w in rows]


def get_wizard(wizard_id: str) -> dict:
    return get_wizard_or_404(wizard_id).to_dict()


def create_wizard(data: dict, user_id: str) -> dict:
    check_permission(user_id, MANAGE_WIZARDS)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", field="name")
    if Wizard.query.filter_by(name=name).first():
        raise ConflictError("Wizard", "name", name)
    steps = validate_wizard_definition(data.get("steps") or [])

    with atomic():
        wizard = Wizard(name=name, description=data.get("description") or "")
        wizard.steps = steps
        db.session.add(wizard)
        db.session.flush()
        result = wizard.to_dict()

    logger.info("Wizard created id=%s name=%s steps=%d", wizard.id, name, len(steps))
    return result


def update_wizard(wizard_id: str, data: dict, user_id: str) -> dict:
    """Rename and/or replace the steps.  Steps are frozen while runs are in progress."""
    check_permission(user_id, MANAGE_WIZARDS)
    wizard = get_wizard_or_404(wizard_id)

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", field="name")
        clash = Wizard.query.filter_by(name=name).first()
        if clash is not None and clash.id != wizard.id:
            raise ConflictError("Wizard", "name", name)

    new_steps = None
    if "steps" in data:
        active = WizardRun.query.filter_by(wizard_id=wizard.id, status=RUN_IN_PROGRESS).count()
        if active:
            raise ValidationError(
                f"Cannot change steps while {active} run(s) are in progress",
                field="steps",
            )
        new_steps = validate_wizard_definition(data["steps"] or [])

    with atomic():
        if "name" in data:
            wizard.name = data["name"].strip()
        if "description" in data:
            wizard.description = data["description"] or ""
        if new_steps is not None:
            # Old rows must be gone before new ones reuse their order_index.
            wizard.steps.clear()
            db.session.flush()
            wizard.steps.extend(new_steps)
        db.session.flush()
        result = wizard.to_dict()

    logger.info("Wizard updated id=%s", wizard.id)
    return result


def delete_wizard(wizard_id: str, user_id: str) -> None:
    check_permission(user_id, MANAGE_WIZARDS)
    wizard = get_wizard_or_404(wizard_id)

    with atomic():
        runs = WizardRun.query.filter_by(wizard_id=wizard.id).delete()
        db.session.delete(wizard)

    logger.info("Wizard deleted id=%s runs_removed=%d", wizard_id, runs)


# ──────────────────────────────────────────────────────────────────────────────
# Runs
# ──────────────────────────────────────────────────────────────────────────────

def _load_run(run_id: str) -> WizardRun:
    """Fresh copy of the run, row-locked where the backend supports it."""
    run = db.session.execute(
        select(WizardRun)
        .where(WizardRun.id == run_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if run is None:
        raise NotFoundError(resource="WizardRun", resource_id=run_id)
    return run


def _authorize_run(run: WizardRun, user_id: str) -> None:
    if run.user_id != user_id and not has_permission(user_id, RUN_OVERRIDE):
        raise PermissionDenied(user_id, RUN_OVERRIDE)


def start_run(wizard_id: str, user_id: str) -> dict:
    wizard = get_wizard_or_404(wizard_id)
    if not wizard.steps:
        raise ValidationError("Wizard has no steps", field="steps")

    with atomic():
        run = WizardRun(
            wizard_id=wizard.id,
            user_id=user_id,
            status=RUN_IN_PROGRESS,
            current_step_index=-1,
            step_data={},
        )
        db.session.add(run)
        db.session.flush()
        result = run.to_dict()

    logger.info("Wizard run started id=%s wizard=%s user=%s", run.id, wizard.id, user_id)
    return result


def get_run(run_id: str, user_id: str) -> dict:
    run = db.session.get(WizardRun, run_id)
    if run is None:
        raise NotFoundError(resource="WizardRun", resource_id=run_id)
    _authorize_run(run, user_id)
    result = run.to_dict()
    result["wizard"] = run.wizard.to_dict()
    return result


def list_runs(user_id: str, *, wizard_id: str | None = None, status: str | None = None) -> list[dict]:
    stmt = select(WizardRun).where(WizardRun.user_id == user_id)
    if wizard_id:
        stmt = stmt.where(WizardRun.wizard_id == wizard_id)
    if status:
        stmt = stmt.where(WizardRun.status == status)
    stmt = stmt.order_by(WizardRun.created_at.desc())
    return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]


def _resolve_lookup(step: WizardStep, step_index: int, object_id) -> Entity:
    if not object_id or not isinstance(object_id, str):
        raise ValidationError(
            "lookup_object_id is required for lookup steps",
            field="lookup_object_id", step=step_index,
        )
    entity = db.session.get(Entity, object_id)
    if entity is None or entity.is_deleted or entity.model_id != step.model_id:
        raise NotFoundError(resource="Entity", resource_id=object_id)
    return entity


def _record_payload(step: WizardStep, step_index: int, form_data, lookup_object_id) -> dict:
    if step.step_type == "lookup":
        entity = _resolve_lookup(step, step_index, lookup_object_id)
        return {"step_type": "lookup", "object_id": entity.id, "form_data": entity.values}

    if form_data is None:
        form_data = {}
    if not isinstance(form_data, dict):
        raise ValidationError("form_data must be an object", field="form_data", step=step_index)
    return {"step_type": "create", "form_data": dict(form_data)}


def _commit_run(steps: list[WizardStep], step_data: dict, user_id: str) -> tuple[dict, list[str]]:
    """
    Final-step commit inside the caller's transaction.

    Returns:
        (fully resolved step data, ids of the entities created)
    """
    models: dict[str, DataModel] = {}
    for step in steps:
        model = db.session.get(DataModel, step.model_id)
        if model is None:
            raise NotFoundError(resource="DataModel", resource_id=step.model_id)
        models[step.model_id] = model

    for step in steps:
        if step.step_type == "create":
            check_permission(user_id, model_permission(step.model_id, "create"))

    resolved = {key: dict(value) for key, value in step_data.items()}

    # Phase A: every lookup's current values, before any mapping reads them.
    for index, step in enumerate(steps):
        entry = resolved.get(str(index))
        if entry is None:
            raise SequenceError(f"Step {index} has no submitted data", expected_step=index)
        if step.step_type == "lookup":
            entity = _resolve_lookup(step, index, entry.get("object_id"))
            entry["form_data"] = entity.values

    # Phase B: produce identities in step order.
    rulesets = validation.load_rulesets()
    produced: dict[int, str] = {}
    created: list[str] = []
    for index, step in enumerate(steps):
        entry = resolved[str(index)]
        if step.step_type == "lookup":
            produced[index] = entry["object_id"]
            continue

        model = models[step.model_id]
        values = dict(entry.get("form_data") or {})
        for mapping in step.property_mappings or []:
            source_index = mapping["source_step_index"]
            target = model.property_by_id(mapping["target_property_id"])
            if target is None:
                raise NotFoundError(resource="ModelProperty", resource_id=mapping["target_property_id"])
            if mapping["source_property_id"] == OBJECT_ID_SENTINEL:
                values[target.name] = produced[source_index]
                continue
            source_model = models[steps[source_index].model_id]
            source = source_model.property_by_id(mapping["source_property_id"])
            if source is None:
                raise NotFoundError(resource="ModelProperty", resource_id=mapping["source_property_id"])
            source_values = resolved[str(source_index)].get("form_data") or {}
            values[target.name] = source_values.get(source.name)

        entity = entity_service.insert_entity(model, values, user_id, rulesets=rulesets, step=index)
        produced[index] = entity.id
        created.append(entity.id)
        entry["form_data"] = entity.values
        entry["object_id"] = entity.id

    return resolved, created


def submit_step(
    run_id: str,
    step_index: int,
    step_type: str,
    user_id: str,
    form_data: dict | None = None,
    lookup_object_id: str | None = None,
) -> dict:
    """
    Submit one step of a run; the last step commits the whole run.

    Returns:
        {"success": True, "is_final_step": bool, "run": dict,
         "created_entity_ids": [...]}

    Raises:
        NotFoundError: run, model, property or looked-up entity missing.
        PermissionDenied: not the run's owner (and no override), or no
            create permission on a step's model.
        SequenceError: completed run, wrong or out-of-range index, or a
            concurrent submission won.
        ValidationError: step type mismatch or a failing property,
            attributed to the step index.
    """
    with atomic():
        run = _load_run(run_id)
        _authorize_run(run, user_id)

        if run.status != RUN_IN_PROGRESS:
            raise SequenceError(f"Wizard run has already been {run.status.lower()}")

        expected = run.current_step_index + 1
        if step_index != expected:
            raise SequenceError(
                f"Invalid step submission. Expected step {expected}, got {step_index}",
                expected_step=expected,
            )

        steps = list(run.wizard.steps)
        if not 0 <= step_index < len(steps):
            raise SequenceError("Step index out of bounds", expected_step=expected)

        step = steps[step_index]
        if step_type != step.step_type:
            raise ValidationError(
                f"Step {step_index} is a '{step.step_type}' step, got '{step_type}'",
                field="step_type", step=step_index,
            )

        step_data = dict(run.step_data or {})
        step_data[str(step_index)] = _record_payload(step, step_index, form_data, lookup_object_id)

        is_final = step_index == len(steps) - 1
        created: list[str] = []
        if is_final:
            step_data, created = _commit_run(steps, step_data, user_id)
            run.status = RUN_COMPLETED

        run.step_data = step_data
        run.current_step_index = step_index
        run.updated_at = now_utc()
        try:
            db.session.flush()
        except StaleDataError as exc:
            raise SequenceError("Wizard run was modified concurrently; reload it and retry") from exc

        result = {
            "success": True,
            "is_final_step": is_final,
            "run": run.to_dict(),
            "created_entity_ids": created,
        }

    if is_final:
        logger.info("Wizard run completed id=%s created=%d by=%s", run_id, len(created), user_id)
    else:
        logger.info("Wizard run step saved id=%s step=%d by=%s", run_id, step_index, user_id)
    return result
