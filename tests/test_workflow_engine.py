"""
Workflow Engine tests

Covers:
  - workflow definition checks (exactly one initial state, successor names)
  - Approval scenario: legal / illegal transitions with readable names
  - initial state auto-assigned on create, client value ignored
  - reassignment resets every entity (incl. soft-deleted), audited
  - clearing or deleting a workflow leaves pointers stale
"""

import pytest

from app.core.exceptions import StateTransitionError, ValidationError
from app.models import db
from app.models.changelog import WORKFLOW_STATE_KEY
from app.models.workflow import Workflow
from app.services import changelog_service, entity_service, schema_registry, workflow_engine


# ── Helpers ──────────────────────────────────────────────────────────────────


def _approval_workflow(admin, name="Approval"):
    return schema_registry.create_workflow(
        {
            "name": name,
            "states": [
                {"name": "Draft", "is_initial": True, "successor_names": ["Review"]},
                {"name": "Review", "successor_names": ["Approved", "Rejected"]},
                {"name": "Approved"},
                {"name": "Rejected"},
            ],
        },
        admin,
    )


def _simple_workflow(admin, name):
    return schema_registry.create_workflow(
        {
            "name": name,
            "states": [
                {"name": "Open", "is_initial": True, "successor_names": ["Closed"]},
                {"name": "Closed"},
            ],
        },
        admin,
    )


def _state_id(workflow, name):
    return next(s["id"] for s in workflow["states"] if s["name"] == name)


def _document_model(admin, workflow_id=None):
    return schema_registry.create_model(
        {
            "name": "Document",
            "workflow_id": workflow_id,
            "properties": [{"name": "title", "type": "string", "required": True}],
        },
        admin,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Definition
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowDefinition:
    def test_initial_state(self, admin):
        wf = _approval_workflow(admin)
        workflow = db.session.get(Workflow, wf["id"])
        assert workflow_engine.initial_state(workflow).name == "Draft"
        assert wf["initial_state_id"] == _state_id(wf, "Draft")

    def test_requires_exactly_one_initial_state(self, admin):
        with pytest.raises(ValidationError):
            schema_registry.create_workflow(
                {"name": "Two", "states": [
                    {"name": "A", "is_initial": True},
                    {"name": "B", "is_initial": True},
                ]},
                admin,
            )
        with pytest.raises(ValidationError):
            schema_registry.create_workflow({"name": "None", "states": [{"name": "A"}]}, admin)

    def test_unknown_successor_rejected(self, admin):
        with pytest.raises(ValidationError):
            schema_registry.create_workflow(
                {"name": "Broken", "states": [
                    {"name": "A", "is_initial": True, "successor_names": ["Z"]},
                ]},
                admin,
            )


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_legality(self, admin):
        wf = _approval_workflow(admin)
        workflow = db.session.get(Workflow, wf["id"])
        draft, review, approved = (_state_id(wf, n) for n in ("Draft", "Review", "Approved"))

        assert workflow_engine.is_legal_transition(workflow, draft, review)
        assert not workflow_engine.is_legal_transition(workflow, draft, approved)
        # No current state: any state of the workflow is accepted.
        assert workflow_engine.is_legal_transition(workflow, None, approved)
        assert not workflow_engine.is_legal_transition(workflow, None, "not-a-state")

    def test_draft_to_review_succeeds(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)

        updated = entity_service.update_entity(
            doc["id"], admin, current_state_id=_state_id(wf, "Review"),
        )
        assert updated["current_state_id"] == _state_id(wf, "Review")

        entries = changelog_service.list_changelog(doc["id"])
        diff = entries[-1]["changes"]["modified_properties"][0]
        assert diff["property"] == WORKFLOW_STATE_KEY
        assert (diff["old_label"], diff["new_label"]) == ("Draft", "Review")

    def test_draft_to_approved_is_rejected_with_names(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)

        with pytest.raises(StateTransitionError) as exc:
            entity_service.update_entity(
                doc["id"], admin, current_state_id=_state_id(wf, "Approved"),
            )
        assert exc.value.from_state == "Draft"
        assert exc.value.to_state == "Approved"
        assert entity_service.get_entity(doc["id"])["current_state_id"] == _state_id(wf, "Draft")
        assert len(changelog_service.list_changelog(doc["id"])) == 1

    def test_cannot_clear_state_under_workflow(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)
        with pytest.raises(StateTransitionError):
            entity_service.update_entity(doc["id"], admin, current_state_id=None)

    def test_cannot_set_state_without_workflow(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin)
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)
        with pytest.raises(StateTransitionError):
            entity_service.update_entity(doc["id"], admin, current_state_id=_state_id(wf, "Draft"))


# ═════════════════════════════════════════════════════════════════════════════
# Initial state & reassignment
# ═════════════════════════════════════════════════════════════════════════════


class TestAssignment:
    def test_initial_state_auto_assigned(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)
        assert doc["current_state_id"] == _state_id(wf, "Draft")

    def test_no_workflow_means_no_state(self, admin):
        model = _document_model(admin)
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)
        assert doc["current_state_id"] is None

    def test_reassignment_resets_every_entity(self, admin):
        wf_a = _approval_workflow(admin, "A")
        wf_b = _simple_workflow(admin, "B")
        model = _document_model(admin, wf_a["id"])

        first = entity_service.create_entity(model["id"], {"title": "one"}, admin)
        second = entity_service.create_entity(model["id"], {"title": "two"}, admin)
        entity_service.update_entity(second["id"], admin, current_state_id=_state_id(wf_a, "Review"))
        entity_service.delete_entity(first["id"], admin)

        schema_registry.update_model(model["id"], {"workflow_id": wf_b["id"]}, admin)

        open_id = _state_id(wf_b, "Open")
        assert entity_service.get_entity(first["id"])["current_state_id"] == open_id
        assert entity_service.get_entity(second["id"])["current_state_id"] == open_id

        last = changelog_service.list_changelog(second["id"])[-1]
        assert last["change_type"] == "UPDATE"
        assert last["changes"]["reason"] == "workflow_reassigned"
        assert last["changes"]["modified_properties"][0]["old_label"] == "Review"

    def test_clearing_workflow_leaves_pointers(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)

        schema_registry.update_model(model["id"], {"workflow_id": None}, admin)

        assert entity_service.get_entity(doc["id"])["current_state_id"] == _state_id(wf, "Draft")
        assert len(changelog_service.list_changelog(doc["id"])) == 1

    def test_deleting_workflow_detaches_models_and_leaves_pointers(self, admin):
        wf = _approval_workflow(admin)
        model = _document_model(admin, wf["id"])
        doc = entity_service.create_entity(model["id"], {"title": "Memo"}, admin)

        schema_registry.delete_workflow(wf["id"], admin)

        assert schema_registry.get_model(model["id"])["workflow_id"] is None
        assert entity_service.get_entity(doc["id"])["current_state_id"] == _state_id(wf, "Draft")
