# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/fitsense/routes/auth.py
"""
Authentication API routes

- Members sign up themselves; signup also links or creates their registry record
- Login issues a bearer session token, logout revokes it
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/signup")
def signup_route():
    """
    Request body:
    {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9876543210",   (optional if email given)
        "password": "Str0ng!pass"
    }

    Returns:
        201: account created (member_record is null if registry linking failed)
        400: invalid input
        409: email or phone already registered
    """
    try:
        data = request.get_json(silent=True) or {}
        user, record = auth_service.signup_member(
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            password=data.get("password") or "",
        )
        return jsonify({
            "user": user.to_dict(),
            "member_record": record.to_dict() if record is not None else None,
        }), 201

    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to sign up member")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    try:
        data = request.get_json(silent=True) or {}
        identifier = data.get("email") or data.get("phone") or data.get("identifier")
        password = data.get("password")

        if not all([identifier, password]):
            return jsonify({"error": "email/phone and password required"}), 400

        user = auth_service.authenticate(identifier, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": session.expires_at.isoformat() + "Z",
        }), 200

    except Exception:
        current_app.logger.exception("Failed to log in")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(g.session_token)
    return jsonify({"message": "Logged out"}), 200
