"""
Permission oracle.

The core makes no RBAC decisions itself: it asks a boolean oracle.
The default oracle reads ``users`` / ``user_permissions``; an application
can install a different one in ``app.extensions["permission_oracle"]``.

Superuser is an explicit predicate (``is_superuser``), never a wildcard
permission string.

Usage:
    from app.services.permission import check_permission, model_permission

    check_permission(user_id, model_permission(model.id, "edit"))

    if is_superuser(user_id):
        ...
"""

from flask import current_app, has_app_context

from app.core.exceptions import PermissionDenied
from app.models import db
from app.models.auth import User, UserPermission

MANAGE_SCHEMA = "admin:manage_schema"
MANAGE_WIZARDS = "admin:manage_wizards"
RUN_OVERRIDE = "wizard:runs:override"

MODEL_ACTIONS = {"create", "edit", "delete", "revert"}


def model_permission(model_id: str, action: str) -> str:
    """Per-model scoped permission key, e.g. ``model:<id>:edit``."""
    if action not in MODEL_ACTIONS:
        raise ValueError(f"Unknown model action: {action}")
    return f"model:{model_id}:{action}"


class DbPermissionOracle:
    """Deny-by-default oracle over the ``users`` tables."""

    def is_superuser(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        user = db.session.get(User, user_id)
        return bool(user and user.is_superuser)

    def has_permission(self, user_id: str | None, key: str) -> bool:
        if not user_id:
            return False
        if self.is_superuser(user_id):
            return True
        grant = (
            UserPermission.query
            .filter_by(user_id=user_id, permission_key=key)
            .first()
        )
        return grant is not None


_default_oracle = DbPermissionOracle()


def get_oracle():
    if has_app_context():
        oracle = current_app.extensions.get("permission_oracle")
        if oracle is not None:
            return oracle
    return _default_oracle


def is_superuser(user_id: str | None) -> bool:
    return get_oracle().is_superuser(user_id)


def has_permission(user_id: str | None, key: str) -> bool:
    return get_oracle().has_permission(user_id, key)


def check_permission(user_id: str | None, key: str) -> None:
    """
    Assert the user holds *key*; raise PermissionDenied if not.

    Raises:
        PermissionDenied: If the oracle refuses.
    """
    if not has_permission(user_id, key):
        raise PermissionDenied(user_id, key)
