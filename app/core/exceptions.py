"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once (see ``app.utils.errors.register_error_handlers``) and get consistent
HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Entity", resource_id=entity_id)
    raise ValidationError("code is required", field="code")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable resource name (e.g. "DataModel", "WizardRun").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a schema or business rule.

    Field-attributed: ``field`` names the offending property, ``step`` the
    wizard step index when the failure happened during a wizard commit.

    Args:
        message: Human-readable explanation of what failed.
        field: Offending property name, if any.
        step: Wizard step index, if any.
        details: Extra structured payload for API responses.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        step: int | None = None,
        details: dict | None = None,
    ) -> None:
        self.field = field
        self.step = step
        self.details = dict(details or {})
        if field is not None:
            self.details.setdefault("field", field)
        if step is not None:
            self.details.setdefault("step", step)
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique name.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class StateTransitionError(Exception):
    """Raised when a workflow state change is not a declared transition."""

    def __init__(self, message: str, from_state: str | None = None, to_state: str | None = None) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message)


class SequenceError(Exception):
    """Raised when a wizard submission does not match the run's position.

    Signals client desync: wrong step index, run already completed,
    index out of bounds, or a concurrent submission won the race.
    """

    def __init__(self, message: str, expected_step: int | None = None) -> None:
        self.expected_step = expected_step
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when the permission oracle refuses an action."""

    def __init__(self, user_id: str | None, permission: str) -> None:
        self.user_id = user_id
        self.permission = permission
        super().__init__(f"User {user_id} does not have permission for '{permission}'")


class StoreError(Exception):
    """Raised when the backing store fails; the transaction is already rolled back."""
