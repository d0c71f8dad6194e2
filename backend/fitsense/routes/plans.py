# Overview: Flask API routes for membership plans.

from flask import Blueprint, request, jsonify, current_app

from ..services import membership_service
from ..validation import SERVICE_ERRORS, http_status_for
from ..decorators import require_auth, require_admin


plans_bp = Blueprint("plans", __name__, url_prefix="/api/plans")


@plans_bp.get("")
def list_plans_route():
    try:
        return jsonify({"items": [p.to_dict() for p in membership_service.list_plans()]}), 200
    except Exception:
        current_app.logger.exception("Failed to list plans")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.post("")
@require_auth
@require_admin
def create_plan_route():
    """Request body: {"name": "Quarterly", "price_cents": 450000, "duration_days": 90}"""
    try:
        data = request.get_json(silent=True) or {}
        plan = membership_service.create_plan(
            data.get("name"),
            data.get("price_cents"),
            data.get("duration_days", 30),
        )
        return jsonify(plan.to_dict()), 201
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to create plan")
        return jsonify({"error": "Internal server error"}), 500
