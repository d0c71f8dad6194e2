# Overview: Request decorators for API routes: bearer authentication and role checks.

from functools import wraps
from flask import request, jsonify, g, current_app, make_response

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require a valid bearer session.

    Sets g.current_user to the authenticated User. Returns 401 for a missing,
    invalid, expired or revoked token, or a deactivated account.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)

        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        g.session_token = token

        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require the authenticated user to be a gym operator (ADMIN role)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not g.current_user.is_admin:
            return jsonify({"error": "Admin access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def cache_private(f):
    """Let the client cache a successful read for STATS_CACHE_SECONDS."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        response = make_response(f(*args, **kwargs))
        seconds = current_app.config.get("STATS_CACHE_SECONDS", 0)
        if response.status_code == 200 and seconds:
            response.headers["Cache-Control"] = f"private, max-age={seconds}"
        return response
    return decorated_function
