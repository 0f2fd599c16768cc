"""
Batch entity operation tests

Covers:
  - batch update of values and of workflow state, one UPDATE entry per entity
  - all-or-nothing: a failing entity (validation, illegal transition,
    uniqueness inside the batch) rolls back the whole batch
  - batch delete: DELETE snapshot per entity, skipped ids reported
  - permission checks
"""

import pytest

from app.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    StateTransitionError,
    ValidationError,
)
from app.models.changelog import CHANGE_DELETE, CHANGE_UPDATE, WORKFLOW_STATE_KEY
from app.services import changelog_service, entity_service, schema_registry
from app.services.permission import model_permission


# ── Helpers ──────────────────────────────────────────────────────────────────


def _task_setup(admin):
    wf = schema_registry.create_workflow(
        {"name": "Task flow", "states": [
            {"name": "Todo", "is_initial": True, "successor_names": ["Doing"]},
            {"name": "Doing", "successor_names": ["Done"]},
            {"name": "Done"},
        ]},
        admin,
    )
    model = schema_registry.create_model(
        {"name": "Task", "workflow_id": wf["id"], "properties": [
            {"name": "title", "type": "string", "required": True},
            {"name": "slug", "type": "string", "is_unique": True},
            {"name": "points", "type": "number", "min_value": 0},
        ]},
        admin,
    )
    return wf, model


def _state_id(workflow, name):
    return next(s["id"] for s in workflow["states"] if s["name"] == name)


def _tasks(model, admin, count):
    return [
        entity_service.create_entity(model["id"], {"title": f"t{i}"}, admin)["id"]
        for i in range(count)
    ]


def _entry_types(entity_id):
    return [e["change_type"] for e in changelog_service.list_changelog(entity_id)]


# ═════════════════════════════════════════════════════════════════════════════
# Batch update
# ═════════════════════════════════════════════════════════════════════════════


class TestBatchUpdate:
    def test_values_applied_to_every_entity_and_audited_per_entity(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 3)

        result = entity_service.batch_update_entities(model["id"], ids, admin, values={"points": 5})

        assert result["updated"] == 3
        assert [e["values"]["points"] for e in result["entities"]] == [5, 5, 5]
        for entity_id in ids:
            entry = changelog_service.list_changelog(entity_id)[-1]
            assert entry["change_type"] == CHANGE_UPDATE
            assert entry["changes"]["modified_properties"] == [
                {"property": "points", "old_value": None, "new_value": 5},
            ]

    def test_unchanged_entities_write_no_entry(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)
        entity_service.update_entity(ids[0], admin, values={"points": 5})

        result = entity_service.batch_update_entities(model["id"], ids, admin, values={"points": 5})

        assert result["updated"] == 1
        assert _entry_types(ids[0]) == ["CREATE", CHANGE_UPDATE]
        assert _entry_types(ids[1]) == ["CREATE", CHANGE_UPDATE]

    def test_state_change_for_every_entity(self, admin):
        wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)

        result = entity_service.batch_update_entities(
            model["id"], ids, admin, current_state_id=_state_id(wf, "Doing"),
        )

        assert {e["current_state_id"] for e in result["entities"]} == {_state_id(wf, "Doing")}
        (diff,) = changelog_service.list_changelog(ids[1])[-1]["changes"]["modified_properties"]
        assert diff["property"] == WORKFLOW_STATE_KEY
        assert (diff["old_label"], diff["new_label"]) == ("Todo", "Doing")

    def test_one_illegal_transition_rolls_back_the_batch(self, admin):
        wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)
        entity_service.update_entity(ids[0], admin, current_state_id=_state_id(wf, "Doing"))

        # Doing -> Done is legal for the first; Todo -> Done is not.
        with pytest.raises(StateTransitionError):
            entity_service.batch_update_entities(
                model["id"], ids, admin, current_state_id=_state_id(wf, "Done"),
            )

        assert entity_service.get_entity(ids[0])["current_state_id"] == _state_id(wf, "Doing")
        assert entity_service.get_entity(ids[1])["current_state_id"] == _state_id(wf, "Todo")
        assert _entry_types(ids[0]) == ["CREATE", CHANGE_UPDATE]

    def test_validation_failure_names_the_entity(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)

        with pytest.raises(ValidationError) as exc:
            entity_service.batch_update_entities(model["id"], ids, admin, values={"points": -1})
        assert exc.value.field == "points"
        assert exc.value.details["entity_id"] == ids[0]
        assert entity_service.get_entity(ids[0])["values"] == {"title": "t0"}

    def test_unique_value_cannot_be_spread_over_the_batch(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)

        with pytest.raises(ValidationError) as exc:
            entity_service.batch_update_entities(model["id"], ids, admin, values={"slug": "same"})
        assert exc.value.field == "slug"
        assert exc.value.details["entity_id"] == ids[1]
        assert all("slug" not in entity_service.get_entity(i)["values"] for i in ids)

    def test_foreign_deleted_and_missing_entities(self, admin):
        _wf, model = _task_setup(admin)
        other = schema_registry.create_model({"name": "Other", "properties": [
            {"name": "title", "type": "string"},
        ]}, admin)
        (task_id,) = _tasks(model, admin, 1)
        foreign = entity_service.create_entity(other["id"], {"title": "x"}, admin)
        gone = entity_service.create_entity(model["id"], {"title": "gone"}, admin)
        entity_service.delete_entity(gone["id"], admin)

        with pytest.raises(ValidationError) as exc:
            entity_service.batch_update_entities(
                model["id"], [task_id, foreign["id"]], admin, values={"points": 1},
            )
        assert exc.value.details["entity_id"] == foreign["id"]

        with pytest.raises(ValidationError) as exc:
            entity_service.batch_update_entities(
                model["id"], [task_id, gone["id"]], admin, values={"points": 1},
            )
        assert exc.value.details["entity_id"] == gone["id"]

        with pytest.raises(NotFoundError):
            entity_service.batch_update_entities(
                model["id"], [task_id, "missing"], admin, values={"points": 1},
            )
        assert _entry_types(task_id) == ["CREATE"]

    def test_empty_request_is_rejected(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 1)
        with pytest.raises(ValidationError) as exc:
            entity_service.batch_update_entities(model["id"], [], admin, values={"points": 1})
        assert exc.value.field == "entity_ids"
        with pytest.raises(ValidationError):
            entity_service.batch_update_entities(model["id"], ids, admin)

    def test_requires_edit_permission(self, admin, editor, grant):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 1)
        with pytest.raises(PermissionDenied):
            entity_service.batch_update_entities(model["id"], ids, editor, values={"points": 1})
        grant(editor, model_permission(model["id"], "edit"))
        result = entity_service.batch_update_entities(model["id"], ids, editor, values={"points": 1})
        assert result["updated"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# Batch delete
# ═════════════════════════════════════════════════════════════════════════════


class TestBatchDelete:
    def test_deletes_and_snapshots_each_entity(self, admin):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 2)

        result = entity_service.batch_delete_entities(model["id"], ids, admin)

        assert result["deleted"] == 2
        assert result["skipped"] == []
        assert entity_service.list_entities(model["id"]) == []
        for entity_id in ids:
            entry = changelog_service.list_changelog(entity_id)[-1]
            assert entry["change_type"] == CHANGE_DELETE
            assert entry["changes"]["snapshot"]["values"]["title"].startswith("t")

    def test_missing_foreign_and_deleted_ids_are_skipped(self, admin):
        _wf, model = _task_setup(admin)
        other = schema_registry.create_model({"name": "Other"}, admin)
        live, gone = _tasks(model, admin, 2)
        foreign = entity_service.create_entity(other["id"], {}, admin)
        entity_service.delete_entity(gone, admin)

        result = entity_service.batch_delete_entities(
            model["id"], [live, gone, foreign["id"], "missing", live], admin,
        )

        assert result["deleted"] == 1
        assert result["skipped"] == [gone, foreign["id"], "missing"]
        assert _entry_types(gone) == ["CREATE", CHANGE_DELETE]
        assert entity_service.get_entity(foreign["id"])["is_deleted"] is False

    def test_batch_deleted_entity_can_be_reverted(self, admin):
        _wf, model = _task_setup(admin)
        (task_id,) = _tasks(model, admin, 1)
        entity_service.batch_delete_entities(model["id"], [task_id], admin)

        entry = changelog_service.list_changelog(task_id)[-1]
        result = changelog_service.revert(entry["id"], admin)
        assert result["entity"]["is_deleted"] is False

    def test_requires_delete_permission(self, admin, editor):
        _wf, model = _task_setup(admin)
        ids = _tasks(model, admin, 1)
        with pytest.raises(PermissionDenied):
            entity_service.batch_delete_entities(model["id"], ids, editor)
