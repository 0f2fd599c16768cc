"""
Schema administration

Blueprint: schema_bp
Prefix: /api/v1

Endpoints:
  Validation Rulesets:
    GET/POST   /validation-rulesets              -- List/create rulesets
    GET/PUT/DELETE /validation-rulesets/<rid>   -- Single ruleset (DELETE refused while in use)

  Models:
    GET/POST   /models                           -- List/create models
    GET/PUT    /models/<mid>                     -- Single model (PUT may reassign workflow)
    DELETE     /models/<mid>                     -- Delete an unused model
    POST       /models/<mid>/properties          -- Add a property
    POST       /models/<mid>/validate            -- Collect-all validation preview

  Workflows:
    GET/POST   /workflows                        -- List/create workflows
    GET/PUT/DELETE /workflows/<wid>              -- Single workflow (PUT may replace states)
"""

import logging

from flask import Blueprint, jsonify

from app.blueprints import json_body, require_user
from app.services import entity_service, schema_registry
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

schema_bp = Blueprint("schema", __name__, url_prefix="/api/v1")
register_error_handlers(schema_bp)


# ------------------------------------------------------------------
#  Validation Rulesets
# ------------------------------------------------------------------

@schema_bp.route("/validation-rulesets", methods=["GET"])
def list_rulesets_route():
    return jsonify({"rulesets": schema_registry.list_rulesets()}), 200


@schema_bp.route("/validation-rulesets", methods=["POST"])
def create_ruleset_route():
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    ruleset = schema_registry.create_ruleset(data, user_id)
    return jsonify({"ruleset": ruleset}), 201


@schema_bp.route("/validation-rulesets/<rid>", methods=["GET"])
def get_ruleset_route(rid):
    return jsonify({"ruleset": schema_registry.get_ruleset(rid)}), 200


@schema_bp.route("/validation-rulesets/<rid>", methods=["PUT"])
def update_ruleset_route(rid):
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    return jsonify({"ruleset": schema_registry.update_ruleset(rid, data, user_id)}), 200


@schema_bp.route("/validation-rulesets/<rid>", methods=["DELETE"])
def delete_ruleset_route(rid):
    user_id, err = require_user()
    if err:
        return err
    schema_registry.delete_ruleset(rid, user_id)
    return jsonify({"deleted": True}), 200


# ------------------------------------------------------------------
#  Models
# ------------------------------------------------------------------

@schema_bp.route("/models", methods=["GET"])
def list_models_route():
    return jsonify({"models": schema_registry.list_models()}), 200


@schema_bp.route("/models", methods=["POST"])
def create_model_route():
    """Create a model together with its property definitions."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    model = schema_registry.create_model(data, user_id)
    return jsonify({"model": model}), 201


@schema_bp.route("/models/<mid>", methods=["GET"])
def get_model_route(mid):
    return jsonify({"model": schema_registry.get_model(mid)}), 200


@schema_bp.route("/models/<mid>", methods=["PUT"])
def update_model_route(mid):
    """Rename, re-describe or reassign the workflow of a model."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    return jsonify({"model": schema_registry.update_model(mid, data, user_id)}), 200


@schema_bp.route("/models/<mid>", methods=["DELETE"])
def delete_model_route(mid):
    """Refused with 422 while entities, relationships or wizard steps use the model."""
    user_id, err = require_user()
    if err:
        return err
    schema_registry.delete_model(mid, user_id)
    return jsonify({"deleted": True}), 200


@schema_bp.route("/models/<mid>/properties", methods=["POST"])
def add_property_route(mid):
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    prop = schema_registry.add_property(mid, data, user_id)
    return jsonify({"property": prop}), 201


@schema_bp.route("/models/<mid>/validate", methods=["POST"])
def validate_values_route(mid):
    """Report every failing property without writing anything.

    Body: {"values": {...}, "entity_id": optional id excluded from uniqueness}
    """
    data, err = json_body()
    if err:
        return err
    result = entity_service.validate_values(mid, data.get("values") or {}, data.get("entity_id"))
    return jsonify(result), 200


# ------------------------------------------------------------------
#  Workflows
# ------------------------------------------------------------------

@schema_bp.route("/workflows", methods=["GET"])
def list_workflows_route():
    return jsonify({"workflows": schema_registry.list_workflows()}), 200


@schema_bp.route("/workflows", methods=["POST"])
def create_workflow_route():
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    workflow = schema_registry.create_workflow(data, user_id)
    return jsonify({"workflow": workflow}), 201


@schema_bp.route("/workflows/<wid>", methods=["GET"])
def get_workflow_route(wid):
    return jsonify({"workflow": schema_registry.get_workflow(wid)}), 200


@schema_bp.route("/workflows/<wid>", methods=["PUT"])
def update_workflow_route(wid):
    """Body: any of {"name", "description", "states"}; states keep their ids to survive."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    if "states" in data and not isinstance(data["states"], list):
        return api_error(E.VALIDATION_INVALID, "states must be a list")
    return jsonify({"workflow": schema_registry.update_workflow(wid, data, user_id)}), 200


@schema_bp.route("/workflows/<wid>", methods=["DELETE"])
def delete_workflow_route(wid):
    user_id, err = require_user()
    if err:
        return err
    schema_registry.delete_workflow(wid, user_id)
    return jsonify({"deleted": True}), 200
