"""
Entities & changelog

Blueprint: entity_bp
Prefix: /api/v1

Endpoints:
    GET/POST  /models/<mid>/entities             -- List (?include_deleted=1) / create
    POST      /models/<mid>/entities/batch-update -- Same partial update for many entities
    POST      /models/<mid>/entities/batch-delete -- Soft-delete many entities
    GET/PUT/DELETE /entities/<eid>               -- Single entity (DELETE is soft)
    POST      /entities/<eid>/restore            -- Undo a soft delete
    GET       /entities/<eid>/changelog          -- History, oldest first
    GET       /changelog/<int:entry_id>          -- Single entry
    POST      /changelog/<int:entry_id>/revert   -- Apply the inverse as a new entry
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import json_body, require_user
from app.services import changelog_service, entity_service
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

entity_bp = Blueprint("entity", __name__, url_prefix="/api/v1")
register_error_handlers(entity_bp)


@entity_bp.route("/models/<mid>/entities", methods=["GET"])
def list_entities_route(mid):
    include_deleted = request.args.get("include_deleted", "").lower() in ("1", "true", "yes")
    entities = entity_service.list_entities(mid, include_deleted=include_deleted)
    return jsonify({"entities": entities, "total": len(entities)}), 200


@entity_bp.route("/models/<mid>/entities", methods=["POST"])
def create_entity_route(mid):
    """Body: {"values": {...}}.  A workflow model's initial state is assigned server-side."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    values = data.get("values") or {}
    if not isinstance(values, dict):
        return api_error(E.VALIDATION_INVALID, "values must be an object")
    entity = entity_service.create_entity(mid, values, user_id)
    return jsonify({"entity": entity}), 201


@entity_bp.route("/models/<mid>/entities/batch-update", methods=["POST"])
def batch_update_entities_route(mid):
    """Body: {"entity_ids": [...], "values"?: {...}, "current_state_id"?: id}.  All or nothing."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    if not isinstance(data.get("entity_ids"), list):
        return api_error(E.VALIDATION_REQUIRED, "entity_ids must be a list")
    values = data.get("values")
    if values is not None and not isinstance(values, dict):
        return api_error(E.VALIDATION_INVALID, "values must be an object")

    kwargs = {"values": values}
    if "current_state_id" in data:
        kwargs["current_state_id"] = data["current_state_id"]
    result = entity_service.batch_update_entities(mid, data["entity_ids"], user_id, **kwargs)
    return jsonify(result), 200


@entity_bp.route("/models/<mid>/entities/batch-delete", methods=["POST"])
def batch_delete_entities_route(mid):
    """Body: {"entity_ids": [...]}.  Missing or already deleted ids are skipped."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    if not isinstance(data.get("entity_ids"), list):
        return api_error(E.VALIDATION_REQUIRED, "entity_ids must be a list")
    return jsonify(entity_service.batch_delete_entities(mid, data["entity_ids"], user_id)), 200


@entity_bp.route("/entities/<eid>", methods=["GET"])
def get_entity_route(eid):
    return jsonify({"entity": entity_service.get_entity(eid)}), 200


@entity_bp.route("/entities/<eid>", methods=["PUT"])
def update_entity_route(eid):
    """Body: any of {"values", "current_state_id", "owner_id"}."""
    user_id, err = require_user()
    if err:
        return err
    data, err = json_body()
    if err:
        return err
    values = data.get("values")
    if values is not None and not isinstance(values, dict):
        return api_error(E.VALIDATION_INVALID, "values must be an object")

    kwargs = {"values": values}
    if "current_state_id" in data:
        kwargs["current_state_id"] = data["current_state_id"]
    if "owner_id" in data:
        kwargs["owner_id"] = data["owner_id"]
    entity = entity_service.update_entity(eid, user_id, **kwargs)
    return jsonify({"entity": entity}), 200


@entity_bp.route("/entities/<eid>", methods=["DELETE"])
def delete_entity_route(eid):
    user_id, err = require_user()
    if err:
        return err
    return jsonify({"entity": entity_service.delete_entity(eid, user_id)}), 200


@entity_bp.route("/entities/<eid>/restore", methods=["POST"])
def restore_entity_route(eid):
    user_id, err = require_user()
    if err:
        return err
    return jsonify({"entity": entity_service.restore_entity(eid, user_id)}), 200


@entity_bp.route("/entities/<eid>/changelog", methods=["GET"])
def list_changelog_route(eid):
    entries = changelog_service.list_changelog(eid)
    return jsonify({"entries": entries, "total": len(entries)}), 200


@entity_bp.route("/changelog/<int:entry_id>", methods=["GET"])
def get_changelog_entry_route(entry_id):
    return jsonify({"entry": changelog_service.get_entry(entry_id)}), 200


@entity_bp.route("/changelog/<int:entry_id>/revert", methods=["POST"])
def revert_changelog_entry_route(entry_id):
    user_id, err = require_user()
    if err:
        return err
    return jsonify(changelog_service.revert(entry_id, user_id)), 200
