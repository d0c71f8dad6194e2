# Overview: Flask API routes for live member accounts: membership plan and live payments.

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import MemberRecord
from ..services import membership_service, payment_service, reporting_service
from ..validation import SERVICE_ERRORS, http_status_for
from ..decorators import require_auth, require_admin


members_bp = Blueprint("members", __name__, url_prefix="/api/admin/members")


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


@members_bp.post("/<int:user_id>/membership")
@require_auth
@require_admin
def assign_membership_route(user_id: int):
    """
    Request body: {"plan_id": 3, "keep_payments": false, "start_date": "2024-06-01"}

    Returns:
        200: membership (registry record updated in the same transaction)
        404: unknown account or plan
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("plan_id") is None:
            return jsonify({"error": "plan_id required"}), 400
        membership = membership_service.assign_plan(
            user_id,
            data.get("plan_id"),
            keep_payments=_flag(data.get("keep_payments", False)),
            start_date=data.get("start_date"),
        )
        return jsonify(membership.to_dict()), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to assign membership")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.delete("/<int:user_id>/membership")
@require_auth
@require_admin
def cancel_membership_route(user_id: int):
    try:
        reset = _flag(request.args.get("reset_payments", "false"))
        membership = membership_service.cancel_plan(user_id, reset_payments=reset)
        return jsonify(membership.to_dict()), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to cancel membership")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.get("/<int:user_id>/payments")
@require_auth
@require_admin
def member_payments_route(user_id: int):
    """
    Live memberships and payments, plus the registry record summary and the
    member's paid total (registry when non-zero, else the live membership).
    """
    try:
        summary = payment_service.get_member_payments(user_id)
        record = db.session.query(MemberRecord).filter(MemberRecord.user_id == user_id).first()
        summary["registry_record"] = record.to_summary() if record is not None else None
        summary["paid_cents"] = reporting_service.member_paid_cents(user_id)
        return jsonify(summary), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load member payments")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.post("/<int:user_id>/payments")
@require_auth
@require_admin
def record_payment_route(user_id: int):
    """
    Request body: {"amount_cents": 150000, "payment_mode": "CARD", "notes": "", "membership_id": 7}
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.record_live_payment(
            user_id,
            data.get("amount_cents"),
            data.get("payment_mode"),
            data.get("notes"),
            membership_id=data.get("membership_id"),
            received_by_user_id=g.current_user.id,
            paid_at=data.get("paid_at"),
        )
        return jsonify(payment.to_dict()), 201
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to record live payment")
        return jsonify({"error": "Internal server error"}), 500
