"""
Wizard Orchestrator tests

Covers:
  - Customer → Order scenario (identity mapping across steps)
  - all-or-nothing commit when the final step fails validation
  - sequence rules: wrong index, completed run, out-of-range, type mismatch
  - lookup steps: eager resolution, value mapping, missing/deleted/foreign entities
  - definition checks (mapping order, lookup mappings, foreign properties)
  - authorization (owner / override / model create permission)
  - optimistic version check on concurrent submissions
"""

import pytest
from sqlalchemy import text

from app.core.exceptions import (
    NotFoundError,
    PermissionDenied,
    SequenceError,
    ValidationError,
)
from app.models import db
from app.models.entity import Entity
from app.models.wizard import OBJECT_ID_SENTINEL, RUN_COMPLETED, RUN_IN_PROGRESS
from app.services import changelog_service, entity_service, schema_registry, wizard_service
from app.services.permission import RUN_OVERRIDE, model_permission


# ── Helpers ──────────────────────────────────────────────────────────────────


def _prop_id(model, name):
    return next(p["id"] for p in model["properties"] if p["name"] == name)


def _customer_and_order(admin):
    customer = schema_registry.create_model(
        {
            "name": "Customer",
            "properties": [
                {"name": "name", "type": "string", "required": True, "is_unique": True},
                {"name": "city", "type": "string"},
            ],
        },
        admin,
    )
    order = schema_registry.create_model(
        {
            "name": "Order",
            "properties": [
                {"name": "customer_id", "type": "relationship", "required": True,
                 "related_model_id": customer["id"], "relationship_type": "one"},
                {"name": "total", "type": "number", "required": True, "min_value": 0},
                {"name": "ship_to", "type": "string"},
            ],
        },
        admin,
    )
    return customer, order


def _order_wizard(admin, customer, order, first_step="create", extra_mappings=()):
    mappings = [{
        "source_step_index": 0,
        "source_property_id": OBJECT_ID_SENTINEL,
        "target_property_id": _prop_id(order, "customer_id"),
    }]
    mappings.extend(extra_mappings)
    return wizard_service.create_wizard(
        {
            "name": f"New order ({first_step})",
            "steps": [
                {"model_id": customer["id"], "step_type": first_step,
                 "property_ids": [_prop_id(customer, "name")]},
                {"model_id": order["id"], "step_type": "create",
                 "property_ids": [_prop_id(order, "total")],
                 "property_mappings": mappings},
            ],
        },
        admin,
    )


def _entity_count():
    return db.session.query(Entity).count()


# ═════════════════════════════════════════════════════════════════════════════
# Customer → Order
# ═════════════════════════════════════════════════════════════════════════════


class TestCustomerOrderScenario:
    def test_full_run_creates_linked_entities(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        assert run["current_step_index"] == -1

        first = wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        assert first["is_final_step"] is False
        assert _entity_count() == 0

        final = wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": "99.5"})
        assert final["is_final_step"] is True
        assert final["run"]["status"] == RUN_COMPLETED

        customers = entity_service.list_entities(customer["id"])
        orders = entity_service.list_entities(order["id"])
        assert len(customers) == 1 and len(orders) == 1
        assert orders[0]["values"]["customer_id"] == customers[0]["id"]
        assert orders[0]["values"]["total"] == 99.5
        assert final["created_entity_ids"] == [customers[0]["id"], orders[0]["id"]]

    def test_completed_run_holds_resolved_step_data(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        final = wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})

        step_data = final["run"]["step_data"]
        assert step_data["0"]["object_id"] == final["created_entity_ids"][0]
        assert step_data["1"]["form_data"]["customer_id"] == final["created_entity_ids"][0]

    def test_each_created_entity_is_audited(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        final = wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})

        for entity_id in final["created_entity_ids"]:
            (entry,) = changelog_service.list_changelog(entity_id)
            assert entry["change_type"] == "CREATE"

    def test_initial_state_assigned_to_wizard_entities(self, admin):
        customer, order = _customer_and_order(admin)
        wf = schema_registry.create_workflow(
            {"name": "Order flow", "states": [{"name": "New", "is_initial": True}]}, admin,
        )
        schema_registry.update_model(order["id"], {"workflow_id": wf["id"]}, admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})

        (created_order,) = entity_service.list_entities(order["id"])
        assert created_order["current_state_id"] == wf["initial_state_id"]


# ═════════════════════════════════════════════════════════════════════════════
# All-or-nothing
# ═════════════════════════════════════════════════════════════════════════════


class TestAtomicCommit:
    def test_failing_final_step_persists_nothing(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})

        with pytest.raises(ValidationError) as exc:
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": ""})
        assert exc.value.step == 1
        assert exc.value.field == "total"

        assert _entity_count() == 0
        state = wizard_service.get_run(run["id"], admin)
        assert state["status"] == RUN_IN_PROGRESS
        assert state["current_step_index"] == 0

    def test_failed_run_can_be_retried(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        with pytest.raises(ValidationError):
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": -1})

        final = wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 5})
        assert final["run"]["status"] == RUN_COMPLETED
        assert _entity_count() == 2

    def test_single_step_wizard_commits_on_its_only_step(self, admin):
        customer, _order = _customer_and_order(admin)
        wizard = wizard_service.create_wizard(
            {"name": "Quick customer", "steps": [
                {"model_id": customer["id"], "step_type": "create"},
            ]},
            admin,
        )
        run = wizard_service.start_run(wizard["id"], admin)

        with pytest.raises(ValidationError) as exc:
            wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"city": "Oslo"})
        assert exc.value.step == 0
        assert exc.value.field == "name"
        assert _entity_count() == 0

        final = wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        assert final["is_final_step"] is True
        assert final["run"]["status"] == RUN_COMPLETED
        (created,) = entity_service.list_entities(customer["id"])
        assert final["created_entity_ids"] == [created["id"]]
        assert created["values"] == {"name": "ACME"}

    def test_earlier_step_failure_is_attributed_to_that_step(self, admin):
        customer, order = _customer_and_order(admin)
        entity_service.create_entity(customer["id"], {"name": "ACME"}, admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        # Intermediate create steps are stored without validation.
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})

        with pytest.raises(ValidationError) as exc:
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})
        assert exc.value.step == 0
        assert exc.value.field == "name"
        assert _entity_count() == 1

    def test_uniqueness_sees_entities_created_earlier_in_the_run(self, admin):
        customer, _order = _customer_and_order(admin)
        wizard = wizard_service.create_wizard(
            {"name": "Two customers", "steps": [
                {"model_id": customer["id"], "step_type": "create"},
                {"model_id": customer["id"], "step_type": "create"},
            ]},
            admin,
        )
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "Same"})

        with pytest.raises(ValidationError) as exc:
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"name": "Same"})
        assert exc.value.step == 1
        assert _entity_count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Sequencing
# ═════════════════════════════════════════════════════════════════════════════


class TestSequencing:
    def test_skipping_a_step_is_rejected_without_mutation(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)

        with pytest.raises(SequenceError) as exc:
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})
        assert exc.value.expected_step == 0
        assert "Expected step 0" in str(exc.value)

        state = wizard_service.get_run(run["id"], admin)
        assert state["current_step_index"] == -1
        assert state["step_data"] == {}

    def test_rewinding_is_rejected(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})

        with pytest.raises(SequenceError):
            wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "Other"})
        state = wizard_service.get_run(run["id"], admin)
        assert state["step_data"]["0"]["form_data"] == {"name": "ACME"}

    def test_completed_run_rejects_more_steps(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})
        wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})

        with pytest.raises(SequenceError):
            wizard_service.submit_step(run["id"], 2, "create", admin, form_data={})

    def test_step_type_must_match_definition(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)

        with pytest.raises(ValidationError) as exc:
            wizard_service.submit_step(run["id"], 0, "lookup", admin, lookup_object_id="x")
        assert exc.value.field == "step_type"

    def test_unknown_run(self, admin):
        with pytest.raises(NotFoundError):
            wizard_service.submit_step("missing", 0, "create", admin, form_data={})


# ═════════════════════════════════════════════════════════════════════════════
# Lookup steps
# ═════════════════════════════════════════════════════════════════════════════


class TestLookupSteps:
    def _lookup_wizard(self, admin, customer, order):
        return _order_wizard(
            admin, customer, order, first_step="lookup",
            extra_mappings=[{
                "source_step_index": 0,
                "source_property_id": _prop_id(customer, "city"),
                "target_property_id": _prop_id(order, "ship_to"),
            }],
        )

    def test_lookup_values_are_resolved_eagerly_and_mapped(self, admin):
        customer, order = _customer_and_order(admin)
        existing = entity_service.create_entity(customer["id"], {"name": "ACME", "city": "Oslo"}, admin)
        wizard = self._lookup_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)

        first = wizard_service.submit_step(
            run["id"], 0, "lookup", admin, lookup_object_id=existing["id"],
        )
        assert first["run"]["step_data"]["0"]["form_data"]["city"] == "Oslo"

        final = wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 3})
        assert len(final["created_entity_ids"]) == 1
        (created,) = entity_service.list_entities(order["id"])
        assert created["values"]["customer_id"] == existing["id"]
        assert created["values"]["ship_to"] == "Oslo"

    def test_phase_a_reads_values_current_at_commit(self, admin):
        customer, order = _customer_and_order(admin)
        existing = entity_service.create_entity(customer["id"], {"name": "ACME", "city": "Oslo"}, admin)
        wizard = self._lookup_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "lookup", admin, lookup_object_id=existing["id"])

        entity_service.update_entity(existing["id"], admin, values={"city": "Bergen"})
        wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 3})

        (created,) = entity_service.list_entities(order["id"])
        assert created["values"]["ship_to"] == "Bergen"

    def test_lookup_of_missing_entity(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = self._lookup_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        with pytest.raises(NotFoundError):
            wizard_service.submit_step(run["id"], 0, "lookup", admin, lookup_object_id="nope")

    def test_lookup_of_other_models_entity(self, admin):
        customer, order = _customer_and_order(admin)
        other = schema_registry.create_model({"name": "Supplier"}, admin)
        supplier = entity_service.create_entity(other["id"], {}, admin)
        wizard = self._lookup_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        with pytest.raises(NotFoundError):
            wizard_service.submit_step(run["id"], 0, "lookup", admin, lookup_object_id=supplier["id"])

    def test_lookup_deleted_before_commit_aborts_run(self, admin):
        customer, order = _customer_and_order(admin)
        existing = entity_service.create_entity(customer["id"], {"name": "ACME"}, admin)
        wizard = self._lookup_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "lookup", admin, lookup_object_id=existing["id"])
        entity_service.delete_entity(existing["id"], admin)

        with pytest.raises(NotFoundError):
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 3})
        assert entity_service.list_entities(order["id"]) == []
        assert wizard_service.get_run(run["id"], admin)["status"] == RUN_IN_PROGRESS


# ═════════════════════════════════════════════════════════════════════════════
# Definition checks
# ═════════════════════════════════════════════════════════════════════════════


class TestWizardDefinition:
    def test_mapping_must_point_to_earlier_step(self, admin):
        customer, order = _customer_and_order(admin)
        with pytest.raises(ValidationError) as exc:
            wizard_service.create_wizard(
                {"name": "Forward", "steps": [
                    {"model_id": order["id"], "step_type": "create", "property_mappings": [{
                        "source_step_index": 1,
                        "source_property_id": OBJECT_ID_SENTINEL,
                        "target_property_id": _prop_id(order, "customer_id"),
                    }]},
                    {"model_id": customer["id"], "step_type": "create"},
                ]},
                admin,
            )
        assert exc.value.step == 0

    def test_self_mapping_rejected(self, admin):
        customer, order = _customer_and_order(admin)
        with pytest.raises(ValidationError):
            wizard_service.create_wizard(
                {"name": "Self", "steps": [
                    {"model_id": customer["id"], "step_type": "create"},
                    {"model_id": order["id"], "step_type": "create", "property_mappings": [{
                        "source_step_index": 1,
                        "source_property_id": OBJECT_ID_SENTINEL,
                        "target_property_id": _prop_id(order, "customer_id"),
                    }]},
                ]},
                admin,
            )

    def test_lookup_steps_cannot_have_mappings(self, admin):
        customer, order = _customer_and_order(admin)
        with pytest.raises(ValidationError) as exc:
            wizard_service.create_wizard(
                {"name": "Bad lookup", "steps": [
                    {"model_id": customer["id"], "step_type": "create"},
                    {"model_id": order["id"], "step_type": "lookup", "property_mappings": [{
                        "source_step_index": 0,
                        "source_property_id": OBJECT_ID_SENTINEL,
                        "target_property_id": _prop_id(order, "customer_id"),
                    }]},
                ]},
                admin,
            )
        assert exc.value.field == "property_mappings"

    def test_target_property_must_belong_to_step_model(self, admin):
        customer, order = _customer_and_order(admin)
        with pytest.raises(ValidationError):
            wizard_service.create_wizard(
                {"name": "Foreign target", "steps": [
                    {"model_id": customer["id"], "step_type": "create"},
                    {"model_id": order["id"], "step_type": "create", "property_mappings": [{
                        "source_step_index": 0,
                        "source_property_id": OBJECT_ID_SENTINEL,
                        "target_property_id": _prop_id(customer, "name"),
                    }]},
                ]},
                admin,
            )

    def test_wizard_needs_steps(self, admin):
        with pytest.raises(ValidationError):
            wizard_service.create_wizard({"name": "Empty", "steps": []}, admin)

    def test_steps_frozen_while_runs_in_progress(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        wizard_service.start_run(wizard["id"], admin)
        with pytest.raises(ValidationError):
            wizard_service.update_wizard(
                wizard["id"], {"steps": [{"model_id": customer["id"], "step_type": "create"}]}, admin,
            )

    def test_update_replaces_steps(self, admin):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        updated = wizard_service.update_wizard(
            wizard["id"], {"steps": [{"model_id": customer["id"], "step_type": "create"}]}, admin,
        )
        assert len(updated["steps"]) == 1

    def test_managing_wizards_requires_permission(self, admin, editor):
        customer, _order = _customer_and_order(admin)
        with pytest.raises(PermissionDenied):
            wizard_service.create_wizard(
                {"name": "Nope", "steps": [{"model_id": customer["id"]}]}, editor,
            )


# ═════════════════════════════════════════════════════════════════════════════
# Authorization
# ═════════════════════════════════════════════════════════════════════════════


class TestRunAuthorization:
    def test_other_users_cannot_submit(self, admin, editor):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        with pytest.raises(PermissionDenied):
            wizard_service.submit_step(run["id"], 0, "create", editor, form_data={"name": "X"})

    def test_override_permission_allows_submission(self, admin, editor, grant):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        grant(editor, RUN_OVERRIDE)
        result = wizard_service.submit_step(run["id"], 0, "create", editor, form_data={"name": "X"})
        assert result["success"] is True

    def test_commit_requires_create_permission_on_every_model(self, admin, editor, grant):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        grant(editor, model_permission(customer["id"], "create"))
        run = wizard_service.start_run(wizard["id"], editor)
        wizard_service.submit_step(run["id"], 0, "create", editor, form_data={"name": "X"})

        with pytest.raises(PermissionDenied):
            wizard_service.submit_step(run["id"], 1, "create", editor, form_data={"total": 1})
        assert _entity_count() == 0

    def test_list_runs_only_returns_own_runs(self, admin, editor):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        mine = wizard_service.start_run(wizard["id"], editor)
        wizard_service.start_run(wizard["id"], admin)
        assert [r["id"] for r in wizard_service.list_runs(editor)] == [mine["id"]]


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrentSubmission:
    def test_losing_submission_fails_and_persists_nothing(self, admin, monkeypatch):
        customer, order = _customer_and_order(admin)
        wizard = _order_wizard(admin, customer, order)
        run = wizard_service.start_run(wizard["id"], admin)
        wizard_service.submit_step(run["id"], 0, "create", admin, form_data={"name": "ACME"})

        original_load = wizard_service._load_run

        def _racing_load(run_id):
            loaded = original_load(run_id)
            # Another request commits a submission right after our read.
            db.session.execute(
                text("UPDATE wizard_runs SET version_id = version_id + 1 WHERE id = :id"),
                {"id": run_id},
            )
            return loaded

        monkeypatch.setattr(wizard_service, "_load_run", _racing_load)

        with pytest.raises(SequenceError) as exc:
            wizard_service.submit_step(run["id"], 1, "create", admin, form_data={"total": 1})
        assert "concurrently" in str(exc.value)

        monkeypatch.undo()
        assert _entity_count() == 0
        state = wizard_service.get_run(run["id"], admin)
        assert state["status"] == RUN_IN_PROGRESS
        assert state["current_step_index"] == 0
