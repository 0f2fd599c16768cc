"""
Wizards & wizard runs

Blueprint: wizard_bp
Prefix: /api/v1

Endpoints:
  Definitions:
    GET/POST       /wizards                      -- List/create wizards
    GET/PUT/DELETE /wizards/<wid>                -- Single wizard
    POST           /wizards/<wid>/start          -- Start a run for the caller

  Runs:
    GET            /wizard-runs                  -- Caller's runs (?wizard_id=, ?status=)
    GET            /wizard-runs/<run_id>         -- Single run
    POST           /wizard-runs/<run_id>/step    -- Submit the next step
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import json_body, require_user
from app.services import wizard_service
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

wizard_bp = Blueprint("wizard", __name__, url_prefix="/api/v1")
register_error_handlers(wizard_bp)


# ------------------------------------------------------------------
#  Definitions
# ------------------------------------------------------------------

@wizard_bp.route("/wizards", methods=["GET"])
def list_wizards_route():
    return jsonify({"wizards": wizard_service.list_wizards()}), 200


@wizard_bp.route("/wizards", methods=["POST"])
def create_wizard_route():
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    return jsonify({"wizard": wizard_service.create_wizard(data, user_id)}), 201


@wizard_bp.route("/wizards/<wid>", methods=["GET"])
def get_wizard_route(wid):
    return jsonify({"wizard": wizard_service.get_wizard(wid)}), 200


@wizard_bp.route("/wizards/<wid>", methods=["PUT"])
def update_wizard_route(wid):
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    return jsonify({"wizard": wizard_service.update_wizard(wid, data, user_id)}), 200


@wizard_bp.route("/wizards/<wid>", methods=["DELETE"])
def delete_wizard_route(wid):
    user_id, err = require_user()
    if err:
        return err
    wizard_service.delete_wizard(wid, user_id)
    return jsonify({"deleted": True}), 200


@wizard_bp.route("/wizards/<wid>/start", methods=["POST"])
def start_run_route(wid):
    user_id, err = require_user()
    if err:
        return err
    return jsonify({"run": wizard_service.start_run(wid, user_id)}), 201


# ------------------------------------------------------------------
#  Runs
# ------------------------------------------------------------------

@wizard_bp.route("/wizard-runs", methods=["GET"])
def list_runs_route():
    user_id, err = require_user()
    if err:
        return err
    runs = wizard_service.list_runs(
        user_id,
        wizard_id=request.args.get("wizard_id") or None,
        status=request.args.get("status") or None,
    )
    return jsonify({"runs": runs, "total": len(runs)}), 200


@wizard_bp.route("/wizard-runs/<run_id>", methods=["GET"])
def get_run_route(run_id):
    user_id, err = require_user()
    if err:
        return err
    return jsonify({"run": wizard_service.get_run(run_id, user_id)}), 200


@wizard_bp.route("/wizard-runs/<run_id>/step", methods=["POST"])
def submit_step_route(run_id):
    """Body: {"step_index": int, "step_type": "create"|"lookup",
              "form_data": {...}?, "lookup_object_id": str?}
    """
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err

    step_index = data.get("step_index")
    if not isinstance(step_index, int) or isinstance(step_index, bool):
        return api_error(E.VALIDATION_REQUIRED, "step_index must be an integer")
    step_type = data.get("step_type")
    if step_type not in ("create", "lookup"):
        return api_error(E.VALIDATION_INVALID, "step_type must be 'create' or 'lookup'")

    result = wizard_service.submit_step(
        run_id,
        step_index,
        step_type,
        user_id,
        form_data=data.get("form_data"),
        lookup_object_id=data.get("lookup_object_id"),
    )
    return jsonify({
        "success": result["success"],
        "is_final_step": result["is_final_step"],
        "run": result["run"],
        "created_entity_ids": result["created_entity_ids"],
    }), 200
