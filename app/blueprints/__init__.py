"""
Record Studio
Blueprint registry and shared request helpers.
"""

from flask import current_app, request

from app.utils.errors import E, api_error


def require_user():
    """Caller identity from the configured header (``X-User`` by default).

    Returns:
        (user_id, None) or (None, 401 response)
    """
    header = current_app.config.get("IDENTITY_HEADER", "X-User")
    user_id = (request.headers.get(header) or "").strip()
    if not user_id:
        return None, api_error(E.UNAUTHORIZED, f"{header} header is required")
    return user_id, None


def json_body():
    """Request JSON as a dict, or (None, 400 response) when it is not an object."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None
