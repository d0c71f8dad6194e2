# Overview: Revenue and collection statistics over both payment stores (registry ledger and live payments).

"""
Revenue Aggregator

Some money is only on the live side (not yet reconciled), some only in the
registry (walk-ins with no account). Totals therefore combine both stores:

- gym-wide "collected" is max(registry total, live total), never the sum,
  so reconciled copies are not counted twice
- unreconciled_live_cents (live payments without reconciled_at) is reported
  beside it, so the reader can see what max() may be hiding
- per-member paid amounts prefer the registry when it is non-zero
- today / week / month buckets read the registry ledger only
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..models import MemberRecord, Membership, MembershipPayment, User
from ..models.accounts import ROLE_MEMBER
from ..models.memberships import MEMBERSHIP_ACTIVE
from ..validation import ValidationError
from fitsense.time_utils import (
    day_bounds,
    parse_iso_date,
    parse_iso_datetime,
    start_of_month,
    start_of_week,
    utcnow,
)
from .ledger_service import ENTRY_SOURCE_LIVE
from .payment_service import PAYMENT_MODE_CASH, get_current_membership, membership_paid_cents, normalize_payment_mode
from .registry_service import registry_stats


class ReportError(ValidationError):
    """Raised when report parameters are invalid."""


def _parse_bound(value: str | None, *, is_end: bool) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    try:
        if len(text) == 10:
            start_dt, end_dt = day_bounds(parse_iso_date(text), parse_iso_date(text))
            return end_dt if is_end else start_dt
        return parse_iso_datetime(text)
    except ValueError:
        raise ReportError(f"Invalid date: {value}")


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    start_dt = _parse_bound(start, is_end=False)
    end_dt = _parse_bound(end, is_end=True)
    if start_dt and end_dt and end_dt < start_dt:
        raise ReportError("end must not be before start")
    return start_dt, end_dt


def _entry_time(entry: dict) -> datetime | None:
    try:
        return parse_iso_datetime(entry.get("paid_at"))
    except (TypeError, ValueError):
        return None


def _in_range(when: datetime | None, start_dt: datetime | None, end_dt: datetime | None) -> bool:
    if when is None:
        return start_dt is None and end_dt is None
    if start_dt and when < start_dt:
        return False
    if end_dt and when > end_dt:
        return False
    return True


def _iter_registry_entries():
    for record in db.session.query(MemberRecord).order_by(MemberRecord.id.asc()).all():
        for entry in record.payment_installments or []:
            yield record, entry


def _registry_collected(start_dt: datetime | None, end_dt: datetime | None) -> int:
    if start_dt is None and end_dt is None:
        total = db.session.query(func.coalesce(func.sum(MemberRecord.paid_cents), 0)).scalar()
        return int(total or 0)
    return sum(
        int(entry.get("amount_cents") or 0)
        for _, entry in _iter_registry_entries()
        if _in_range(_entry_time(entry), start_dt, end_dt)
    )


def _live_payments_query(start_dt: datetime | None, end_dt: datetime | None):
    q = db.session.query(func.coalesce(func.sum(MembershipPayment.amount_cents), 0)).select_from(MembershipPayment)
    if start_dt:
        q = q.filter(MembershipPayment.paid_at >= start_dt)
    if end_dt:
        q = q.filter(MembershipPayment.paid_at <= end_dt)
    return q


def revenue_summary(start: str | None = None, end: str | None = None) -> dict:
    start_dt, end_dt = _parse_range(start, end)

    registry_cents = _registry_collected(start_dt, end_dt)
    live_cents = int(_live_payments_query(start_dt, end_dt).scalar() or 0)
    # Payments on retired memberships were never meant to reach the registry
    unreconciled_cents = int(
        _live_payments_query(start_dt, end_dt)
        .join(Membership, Membership.id == MembershipPayment.membership_id)
        .filter(MembershipPayment.reconciled_at.is_(None), Membership.status == MEMBERSHIP_ACTIVE)
        .scalar()
        or 0
    )

    stats = registry_stats()
    return {
        "start": start,
        "end": end,
        "registry_collected_cents": registry_cents,
        "live_collected_cents": live_cents,
        "total_collected_cents": max(registry_cents, live_cents),
        "unreconciled_live_cents": unreconciled_cents,
        "collected_with_unreconciled_cents": registry_cents + unreconciled_cents,
        "expected_cents": stats["expected_cents"],
        "pending_cents": stats["pending_cents"],
        "overpaid_cents": stats["overpaid_cents"],
    }


def collection_stats(now: datetime | None = None) -> dict:
    """Time-bucketed collections from the registry ledger."""
    now = now or utcnow()
    today_start = datetime.combine(now.date(), datetime.min.time())
    week_start = start_of_week(now)
    month_start = start_of_month(now)

    result = {
        "today_cents": 0,
        "week_cents": 0,
        "month_cents": 0,
        "cash_cents": 0,
        "non_cash_cents": 0,
        "payment_count": 0,
    }
    for _, entry in _iter_registry_entries():
        amount = int(entry.get("amount_cents") or 0)
        result["payment_count"] += 1
        if (entry.get("payment_mode") or PAYMENT_MODE_CASH) == PAYMENT_MODE_CASH:
            result["cash_cents"] += amount
        else:
            result["non_cash_cents"] += amount

        when = _entry_time(entry)
        if when is None or when > now:
            continue
        if when >= today_start:
            result["today_cents"] += amount
        if when >= week_start:
            result["week_cents"] += amount
        if when >= month_start:
            result["month_cents"] += amount
    return result


def member_paid_cents(user_id: int) -> int:
    """Registry total when non-zero, otherwise the current live membership's total."""
    record = db.session.query(MemberRecord).filter(MemberRecord.user_id == user_id).first()
    if record is not None and record.paid_cents:
        return record.paid_cents
    membership = get_current_membership(user_id)
    if membership is None:
        return 0
    return membership_paid_cents(membership.id)


def dashboard_stats(now: datetime | None = None) -> dict:
    now = now or utcnow()
    today = now.date()

    active_live = (
        db.session.query(func.count(func.distinct(Membership.user_id)))
        .filter(Membership.status == MEMBERSHIP_ACTIVE, Membership.end_date >= today)
        .scalar()
        or 0
    )
    active_registry = (
        db.session.query(func.count(MemberRecord.id))
        .filter(MemberRecord.membership_end_date >= today)
        .scalar()
        or 0
    )
    member_accounts = db.session.query(func.count(User.id)).filter(User.role == ROLE_MEMBER).scalar() or 0

    revenue = revenue_summary()
    registry = registry_stats(today)
    return {
        "total_members": registry["total_members"],
        "member_accounts": int(member_accounts),
        "active_members": max(int(active_live), int(active_registry)),
        "total_revenue_cents": revenue["total_collected_cents"],
        "unreconciled_live_cents": revenue["unreconciled_live_cents"],
        "collections": collection_stats(now),
        "registry": registry,
    }


def payment_history(
    start: str | None = None,
    end: str | None = None,
    mode: str | None = None,
    search: str | None = None,
    *,
    include_registry: bool = True,
    limit: int = 500,
) -> list[dict]:
    """
    Live payments merged with registry-only entries, newest first.

    Registry entries that are copies of live payments are left out so each
    real payment appears once.
    """
    start_dt, end_dt = _parse_range(start, end)
    mode_filter = normalize_payment_mode(mode) if mode else None
    needle = (search or "").strip().lower()

    q = (
        db.session.query(MembershipPayment, User)
        .join(User, User.id == MembershipPayment.user_id)
    )
    if start_dt:
        q = q.filter(MembershipPayment.paid_at >= start_dt)
    if end_dt:
        q = q.filter(MembershipPayment.paid_at <= end_dt)
    if mode_filter:
        q = q.filter(MembershipPayment.payment_mode == mode_filter)
    if needle:
        like = f"%{needle}%"
        q = q.filter(or_(
            func.lower(User.name).like(like),
            func.lower(User.email).like(like),
            User.phone.like(like),
        ))

    rows: list[tuple[datetime, dict]] = []
    for payment, user in q.order_by(MembershipPayment.paid_at.desc()).limit(limit).all():
        data = payment.to_dict()
        data.update({"source": "live", "member_name": user.name, "member_email": user.email, "record_id": None})
        rows.append((payment.paid_at, data))

    if include_registry:
        for record, entry in _iter_registry_entries():
            if entry.get("source") == ENTRY_SOURCE_LIVE:
                continue
            if mode_filter and entry.get("payment_mode") != mode_filter:
                continue
            if needle and not any(needle in (v or "").lower() for v in (record.name, record.email, record.phone)):
                continue
            when = _entry_time(entry)
            if not _in_range(when, start_dt, end_dt):
                continue
            data = dict(entry)
            data.update({"member_name": record.name, "member_email": record.email, "record_id": record.id})
            rows.append((when or datetime.min, data))

    rows.sort(key=lambda pair: pair[0], reverse=True)
    return [data for _, data in rows[:limit]]
