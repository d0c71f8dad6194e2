# Overview: Flask API routes for revenue reports; read-only, short client-side cache.

from flask import Blueprint, request, jsonify, current_app

from ..services import reporting_service
from ..validation import SERVICE_ERRORS, http_status_for
from ..decorators import require_auth, require_admin, cache_private


reports_bp = Blueprint("reports", __name__, url_prefix="/api/admin/reports")


@reports_bp.get("/revenue")
@require_auth
@require_admin
@cache_private
def revenue_route():
    """Query params: start, end (YYYY-MM-DD or ISO-8601)."""
    try:
        summary = reporting_service.revenue_summary(request.args.get("start"), request.args.get("end"))
        return jsonify(summary), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to build revenue report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/stats")
@require_auth
@require_admin
@cache_private
def stats_route():
    try:
        return jsonify(reporting_service.dashboard_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to build dashboard stats")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/collections")
@require_auth
@require_admin
@cache_private
def collections_route():
    try:
        return jsonify(reporting_service.collection_stats()), 200
    except Exception:
        current_app.logger.exception("Failed to build collection stats")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/payments")
@require_auth
@require_admin
@cache_private
def payments_route():
    """Query params: start, end, mode, search, include_registry (default true)."""
    try:
        include_registry = request.args.get("include_registry", "true").strip().lower() not in ("0", "false", "no")
        items = reporting_service.payment_history(
            start=request.args.get("start"),
            end=request.args.get("end"),
            mode=request.args.get("mode"),
            search=request.args.get("search"),
            include_registry=include_registry,
            limit=current_app.config.get("PAYMENT_HISTORY_LIMIT", 500),
        )
        return jsonify({"items": items, "count": len(items)}), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to build payment history")
        return jsonify({"error": "Internal server error"}), 500
