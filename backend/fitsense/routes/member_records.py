# Overview: Flask API routes for the member registry; parses input and returns JSON responses.

# backend/fitsense/routes/member_records.py
"""
Member Registry API Routes

- CRUD over registry records (walk-in and signed-up members)
- Registry payment ledger: list, add, delete entries
- Plan assignment and cancellation
- Reconciliation runs and bulk import

SECURITY:
- Every route requires an ADMIN session
- Deleting a ledger entry additionally requires a super admin
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import ledger_service, registry_service, reconciliation_service, import_service
from ..validation import SERVICE_ERRORS, ValidationError, http_status_for
from ..decorators import require_auth, require_admin, cache_private
from fitsense.time_utils import utcnow


member_records_bp = Blueprint("member_records", __name__, url_prefix="/api/admin/member-records")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


# =============================================================================
# RECORDS
# =============================================================================

@member_records_bp.get("")
@require_auth
@require_admin
@cache_private
def list_records_route():
    """
    Query params: search, filter (all, signed-up, not-signed-up, pending-payment,
    fully-paid, active-subscription, expired-subscription, no-subscription,
    expiring-soon), page, per_page.
    """
    try:
        result = registry_service.list_records(
            search=request.args.get("search"),
            filter_=request.args.get("filter", "all"),
            expiring_days=current_app.config.get("EXPIRING_SOON_DAYS", 7),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
        result["stats"] = registry_service.registry_stats(
            expiring_days=current_app.config.get("EXPIRING_SOON_DAYS", 7)
        )
        return jsonify(result), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to list member records")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.post("")
@require_auth
@require_admin
def create_record_route():
    """
    Request body: registry fields plus optional initial_payment_cents and
    payment_mode.

    Returns:
        201: record created
        400: invalid input
        409: email or phone already used
    """
    try:
        data = dict(_json_body())
        initial = data.pop("initial_payment_cents", None)
        mode = data.pop("payment_mode", None)
        record = registry_service.create_record(
            data,
            initial_payment_cents=initial,
            payment_mode=mode,
            recorded_by=g.current_user.name,
        )
        return jsonify(record.to_dict(utcnow().date())), 201
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to create member record")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.get("/<int:record_id>")
@require_auth
@require_admin
def get_record_route(record_id: int):
    try:
        record = registry_service.get_record(record_id)
        return jsonify(record.to_dict(utcnow().date())), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load member record")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.put("/<int:record_id>")
@require_auth
@require_admin
def update_record_route(record_id: int):
    try:
        record = registry_service.update_record(record_id, _json_body())
        return jsonify(record.to_dict(utcnow().date())), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to update member record")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.delete("/<int:record_id>")
@require_auth
@require_admin
def delete_record_route(record_id: int):
    try:
        registry_service.delete_record(record_id)
        return jsonify({"deleted": record_id}), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to delete member record")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# LEDGER
# =============================================================================

@member_records_bp.get("/<int:record_id>/payments")
@require_auth
@require_admin
def list_payments_route(record_id: int):
    try:
        return jsonify(ledger_service.list_entries(record_id)), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.post("/<int:record_id>/payments")
@require_auth
@require_admin
def add_payment_route(record_id: int):
    """
    Request body:
    {
        "amount_cents": 50000,
        "payment_mode": "UPI",   (optional, default CASH)
        "notes": "June",         (optional)
        "paid_at": "2024-06-01T10:00:00Z"  (optional, default now)
    }
    """
    try:
        data = _json_body()
        entry, record = ledger_service.add_entry(
            record_id,
            data.get("amount_cents"),
            data.get("payment_mode"),
            data.get("notes"),
            paid_at=data.get("paid_at"),
            recorded_by=g.current_user.name,
        )
        return jsonify({"entry": entry, "record": record.to_dict(utcnow().date())}), 201
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to add payment")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.delete("/<int:record_id>/payments/<entry_id>")
@require_auth
@require_admin
def delete_payment_route(record_id: int, entry_id: str):
    try:
        deleted, paid_cents = ledger_service.delete_entry(
            record_id,
            entry_id,
            caller_is_privileged=bool(g.current_user.is_super_admin),
        )
        return jsonify({"deleted_entry": deleted, "paid_cents": paid_cents}), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to delete payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PLANS
# =============================================================================

@member_records_bp.post("/<int:record_id>/plan")
@require_auth
@require_admin
def assign_plan_route(record_id: int):
    """
    Request body: {"plan_id": 3, "keep_payments": false, "start_date": "2024-06-01"}
    """
    try:
        data = _json_body()
        if data.get("plan_id") is None:
            return jsonify({"error": "plan_id required"}), 400
        record = ledger_service.assign_plan_to_record(
            record_id,
            data.get("plan_id"),
            keep_payments=_flag(data.get("keep_payments", False)),
            start_date=data.get("start_date"),
        )
        return jsonify(record.to_dict(utcnow().date())), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to assign plan")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.post("/<int:record_id>/plan/cancel")
@require_auth
@require_admin
def cancel_plan_route(record_id: int):
    try:
        data = _json_body()
        record = ledger_service.cancel_record_plan(
            record_id,
            reset_payments=_flag(data.get("reset_payments", False)),
        )
        return jsonify(record.to_dict(utcnow().date())), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to cancel plan")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RECONCILIATION AND IMPORT
# =============================================================================

@member_records_bp.post("/sync")
@require_auth
@require_admin
def sync_route():
    try:
        report = reconciliation_service.run_reconciliation()
        return jsonify(report.to_dict()), 200
    except Exception:
        current_app.logger.exception("Failed to run reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.post("/sync/<int:user_id>")
@require_auth
@require_admin
def sync_account_route(user_id: int):
    try:
        return jsonify(reconciliation_service.reconcile_account(user_id)), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile account")
        return jsonify({"error": "Internal server error"}), 500


@member_records_bp.post("/import")
@require_auth
@require_admin
def import_route():
    """
    Either a multipart upload with a .csv/.xlsx "file" field, or a JSON body
    {"rows": [{...}, ...]} or {"csv": "<csv text>"}.
    """
    if "file" in request.files:
        file = request.files["file"]
        try:
            rows = import_service.rows_from_upload(file.filename, file.stream)
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400
        except Exception:
            current_app.logger.exception("Failed to parse member upload %s", file.filename)
            return jsonify({"error": "Failed to parse upload"}), 400
    else:
        rows = None

    try:
        if rows is None:
            data = _json_body()
            rows = data.get("rows")
            if rows is None and data.get("csv"):
                rows = import_service.rows_from_csv(str(data["csv"]))
        if not isinstance(rows, list):
            return jsonify({"error": "rows (list), csv or file required"}), 400
        report = import_service.import_member_rows(rows, recorded_by=g.current_user.name)
        return jsonify(report.to_dict()), 200
    except SERVICE_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to import members")
        return jsonify({"error": "Internal server error"}), 500
