from __future__ import annotations

from flask import current_app, g, request

from keymarket.errors import Forbidden, ValidationError
from keymarket.utils.jwt_utils import Caller, verify_caller


def current_caller() -> Caller:
    """Verify the bearer token on the current request and expose the caller on ``g``."""
    engine = current_app.extensions["keymarket"]
    caller = verify_caller(request.headers.get("Authorization", ""), secret=engine.config.jwt_secret)
    g.caller_id = caller.user_id
    g.caller_role = caller.role
    return caller


def require_admin() -> Caller:
    caller = current_caller()
    if not caller.is_admin:
        raise Forbidden("Admin access required")
    return caller


def json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload
