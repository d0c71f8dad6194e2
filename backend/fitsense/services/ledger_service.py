# Overview: Registry payment ledger: append, remove and recompute entries embedded on a member record.

"""
Registry Ledger Service

Each MemberRecord carries its payment history as a JSON list of entries
(payment_installments) plus a cached total (paid_cents).

INVARIANTS:
- paid_cents == sum(entry["amount_cents"]) at every commit
- replace_entries() is the only writer of either field
- entries are never edited in place; correction is delete + re-add
- every read-modify-write runs under lock_for_update + run_with_retry, so the
  version_id compare-and-swap turns a lost update into a retry

Entry shape:
    {
        "id": "1718000000000",          # unique within the record
        "amount_cents": 50000,          # > 0
        "payment_mode": "CASH",
        "notes": "",
        "paid_at": "2024-06-10T09:30:00Z",
        "recorded_by": "Front Desk",    # or None
        "source": "manual",             # manual | live | import
        "live_payment_id": 42,          # live entries only
    }
"""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import MemberRecord, MembershipPayment, Plan
from ..validation import ValidationError, NotFoundError, ForbiddenError
from fitsense.time_utils import utcnow, to_utc_z, parse_iso_datetime, parse_iso_date
from .concurrency import lock_for_update, run_with_retry
from .payment_service import NoActiveMembershipError, normalize_payment_mode, validate_positive_amount
from . import notification_service


class RecordNotFoundError(NotFoundError):
    """No registry record with the given id."""


class EntryNotFoundError(NotFoundError):
    """No ledger entry with the given id on this record."""


class PlanNotFoundError(NotFoundError):
    """No active plan with the given id."""


class LedgerForbiddenError(ForbiddenError):
    """Caller may not delete ledger entries."""


ENTRY_SOURCE_MANUAL = "manual"
ENTRY_SOURCE_LIVE = "live"
ENTRY_SOURCE_IMPORT = "import"


# =============================================================================
# ENTRY HELPERS
# =============================================================================

def compute_paid_cents(entries: list[dict]) -> int:
    return sum(int(entry.get("amount_cents") or 0) for entry in entries)


def new_entry_id(existing_ids) -> str:
    """Millisecond timestamp, bumped until it is unused on this record."""
    taken = {str(i) for i in existing_ids}
    candidate = int(time.time() * 1000)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


def build_entry(
    *,
    entry_id: str,
    amount_cents: int,
    payment_mode: str,
    notes: str | None,
    paid_at: datetime,
    recorded_by: str | None,
    source: str = ENTRY_SOURCE_MANUAL,
    live_payment_id: int | None = None,
) -> dict:
    entry = {
        "id": entry_id,
        "amount_cents": amount_cents,
        "payment_mode": payment_mode,
        "notes": notes or "",
        "paid_at": to_utc_z(paid_at),
        "recorded_by": recorded_by,
        "source": source,
    }
    if live_payment_id is not None:
        entry["live_payment_id"] = live_payment_id
    return entry


def entry_from_live_payment(payment: MembershipPayment) -> dict:
    """Deterministic registry copy of a live payment, so re-folding is a no-op."""
    return build_entry(
        entry_id=f"live-{payment.id}",
        amount_cents=payment.amount_cents,
        payment_mode=payment.payment_mode,
        notes=payment.notes,
        paid_at=payment.paid_at,
        recorded_by=payment.received_by.name if payment.received_by else None,
        source=ENTRY_SOURCE_LIVE,
        live_payment_id=payment.id,
    )


def replace_entries(record: MemberRecord, entries: list[dict]) -> None:
    """
    Install a new entry list and its recomputed total on the record.

    A fresh list object is always assigned so the JSON column is flagged dirty.
    """
    new_entries = [dict(e) for e in entries]
    record.payment_installments = new_entries
    record.paid_cents = compute_paid_cents(new_entries)


def _load_record_locked(record_id: int) -> MemberRecord:
    record = lock_for_update(db.session.query(MemberRecord).filter_by(id=record_id)).first()
    if record is None:
        raise RecordNotFoundError(f"Member record {record_id} not found")
    return record


def _parse_paid_at(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError("paid_at must be an ISO-8601 datetime")


# =============================================================================
# ENTRY OPERATIONS
# =============================================================================

def add_entry(
    record_id: int,
    amount_cents,
    payment_mode: str | None = None,
    notes: str | None = None,
    *,
    paid_at=None,
    recorded_by: str | None = None,
    source: str = ENTRY_SOURCE_MANUAL,
    send_receipt: bool = True,
) -> tuple[dict, MemberRecord]:
    """
    Append one payment entry to a registry record.

    Validation runs before the record is loaded, so a bad amount never
    touches the session. The receipt email goes out after commit.

    Returns:
        (entry, record) with record.paid_cents already recomputed

    Raises:
        InvalidAmountError: amount <= 0 or not an integer of cents
        ValidationError: unknown payment mode or bad paid_at
        RecordNotFoundError: unknown record
    """
    cents = validate_positive_amount(amount_cents)
    mode = normalize_payment_mode(payment_mode)
    when = _parse_paid_at(paid_at)

    def _op():
        record = _load_record_locked(record_id)
        existing = list(record.payment_installments or [])
        entry = build_entry(
            entry_id=new_entry_id(e.get("id") for e in existing),
            amount_cents=cents,
            payment_mode=mode,
            notes=(notes or "").strip(),
            paid_at=when or utcnow(),
            recorded_by=recorded_by,
            source=source,
        )
        replace_entries(record, existing + [entry])
        db.session.commit()
        return entry, record

    entry, record = run_with_retry(_op)

    if send_receipt:
        notification_service.send_payment_receipt(
            to=record.email,
            name=record.name,
            amount_cents=cents,
            payment_mode=mode,
            paid_cents=record.paid_cents,
            plan_total_cents=record.plan_total_cents,
            plan_name=record.plan_name,
            receipt_no=f"R-{record.id}-{entry['id']}",
        )
    return entry, record


def list_entries(record_id: int) -> dict:
    record = db.session.get(MemberRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"Member record {record_id} not found")
    return {
        "record_id": record.id,
        "entries": list(record.payment_installments or []),
        "paid_cents": record.paid_cents,
        "plan_total_cents": record.plan_total_cents,
        "remaining_cents": record.remaining_cents,
    }


def delete_entry(record_id: int, entry_id, *, caller_is_privileged: bool) -> tuple[dict, int]:
    """
    Remove one entry and recompute the total from the surviving entries.

    The total is never computed as old - deleted; recomputing from the list
    also repairs a total that had drifted.

    Returns:
        (deleted_entry, new_paid_cents)
    """
    if not caller_is_privileged:
        raise LedgerForbiddenError("Only a super admin can delete payment entries")

    target = str(entry_id)

    def _op():
        record = _load_record_locked(record_id)
        entries = list(record.payment_installments or [])
        deleted = next((e for e in entries if str(e.get("id")) == target), None)
        if deleted is None:
            raise EntryNotFoundError(f"Payment entry {entry_id} not found on record {record_id}")
        replace_entries(record, [e for e in entries if str(e.get("id")) != target])
        db.session.commit()
        return deleted, record.paid_cents

    return run_with_retry(_op)


# =============================================================================
# PLAN OPERATIONS
# =============================================================================

def apply_plan(
    record: MemberRecord,
    *,
    plan_name: str,
    plan_total_cents: int,
    start_date: date | None,
    end_date: date | None,
    keep_payments: bool,
) -> None:
    """
    Put a plan on a record without committing.

    keep_payments=False starts a fresh balance (no entries, paid 0).
    keep_payments=True leaves the ledger exactly as it was.
    """
    record.plan_name = plan_name
    record.plan_total_cents = plan_total_cents
    record.membership_start_date = start_date
    record.membership_end_date = end_date
    if not keep_payments:
        replace_entries(record, [])


def clear_plan(record: MemberRecord, *, reset_payments: bool, today: date) -> None:
    """
    Registry side of a cancellation, without committing.

    Without reset the plan ends today and the history stays. With reset the
    plan, dates and ledger are all cleared.
    """
    if reset_payments:
        record.plan_name = None
        record.plan_total_cents = 0
        record.membership_start_date = None
        record.membership_end_date = None
        replace_entries(record, [])
    else:
        record.membership_end_date = today


def get_active_plan(plan_id) -> Plan:
    plan = db.session.get(Plan, plan_id) if plan_id is not None else None
    if plan is None or not plan.is_active:
        raise PlanNotFoundError(f"Plan {plan_id} not found")
    return plan


def assign_plan_to_record(
    record_id: int,
    plan_id: int,
    *,
    keep_payments: bool = False,
    start_date=None,
) -> MemberRecord:
    """
    Assign a plan to a registry record.

    A record linked to a live account goes through the live membership so both
    sides stay on the same plan; a walk-in record is updated directly.
    """
    try:
        start = parse_iso_date(start_date) if isinstance(start_date, str) else start_date
    except ValueError:
        raise ValidationError("start_date must be a YYYY-MM-DD date")

    record = db.session.get(MemberRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"Member record {record_id} not found")
    plan = get_active_plan(plan_id)

    if record.user_id is not None:
        from .membership_service import assign_plan
        assign_plan(record.user_id, plan.id, keep_payments=keep_payments, start_date=start)
        db.session.refresh(record)
        return record

    start = start or utcnow().date()
    end = plan_end_date(start, plan)

    def _op():
        locked = _load_record_locked(record_id)
        apply_plan(
            locked,
            plan_name=plan.name,
            plan_total_cents=plan.price_cents,
            start_date=start,
            end_date=end,
            keep_payments=keep_payments,
        )
        db.session.commit()
        return locked

    record = run_with_retry(_op)
    current_app.logger.info("Assigned plan %s to member record %s (keep_payments=%s)", plan.name, record.id, keep_payments)
    return record


def plan_end_date(start: date, plan: Plan) -> date:
    return start + timedelta(days=plan.duration_days)


def cancel_record_plan(record_id: int, *, reset_payments: bool = False) -> MemberRecord:
    """
    Cancel the plan on a registry record.

    A linked record cancels the live membership (which also updates this
    record); a walk-in record just has its plan ended or cleared.

    Raises:
        RecordNotFoundError: unknown record
        NoActiveMembershipError: walk-in record with no plan on it
    """
    record = db.session.get(MemberRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"Member record {record_id} not found")

    if record.user_id is not None:
        from .membership_service import cancel_plan
        cancel_plan(record.user_id, reset_payments=reset_payments)
        db.session.refresh(record)
        return record

    def _op():
        locked = _load_record_locked(record_id)
        if locked.plan_name is None and locked.membership_end_date is None:
            raise NoActiveMembershipError(f"Member record {record_id} has no plan to cancel")
        clear_plan(locked, reset_payments=reset_payments, today=utcnow().date())
        db.session.commit()
        return locked

    return run_with_retry(_op)
