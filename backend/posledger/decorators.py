# Overview: Request decorators for API routes; bearer-token auth and role checks.

from functools import wraps

from flask import g, jsonify, request

from .services import session_service
from .validation import ForbiddenError, UnauthorizedError


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid session token.

    Sets g.current_user and g.session_token. Returns 401 if the header is
    missing, or the token is unknown, expired, revoked or belongs to a
    deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify(UnauthorizedError("Authentication required").to_dict()), 401

        user = session_service.validate_session(token)
        if not user:
            return jsonify(UnauthorizedError("Invalid or expired token").to_dict()), 401

        g.current_user = user
        g.session_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the authenticated user to hold one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "current_user"):
                return jsonify(UnauthorizedError("Authentication required").to_dict()), 401
            if g.current_user.role not in roles:
                error = ForbiddenError(
                    "Permission denied",
                    details=[f"Requires role: {' or '.join(roles)}"],
                )
                return jsonify(error.to_dict()), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator


require_admin = require_role("Admin")
