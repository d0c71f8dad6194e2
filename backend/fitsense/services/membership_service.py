# Overview: Plans and live memberships: assign, cancel and expire, keeping the registry record on the same plan.

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Plan, Membership, User
from ..models.accounts import ROLE_MEMBER
from ..models.memberships import MEMBERSHIP_ACTIVE, MEMBERSHIP_EXPIRED, MEMBERSHIP_BLOCKED, MEMBERSHIP_REPLACED
from ..validation import ConflictError, ValidationError, parse_amount_cents
from fitsense.time_utils import utcnow, parse_iso_date
from .concurrency import lock_for_update, run_with_retry
from .payment_service import AccountNotFoundError, NoActiveMembershipError, current_membership_query
from . import ledger_service, notification_service, registry_service


# =============================================================================
# PLANS
# =============================================================================

def list_plans(include_inactive: bool = False) -> list[Plan]:
    q = db.session.query(Plan)
    if not include_inactive:
        q = q.filter(Plan.is_active.is_(True))
    return q.order_by(Plan.price_cents.asc(), Plan.id.asc()).all()


def create_plan(name: str, price_cents, duration_days=30) -> Plan:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    price = parse_amount_cents(price_cents, "price_cents")
    if price < 0:
        raise ValidationError("price_cents must be >= 0")
    try:
        days = int(duration_days)
    except (TypeError, ValueError):
        raise ValidationError("duration_days must be an integer")
    if days <= 0:
        raise ValidationError("duration_days must be greater than 0")

    if db.session.query(Plan.id).filter(Plan.name == name).first() is not None:
        raise ConflictError(f"Plan {name} already exists")

    plan = Plan(name=name, price_cents=price, duration_days=days, is_active=True)
    db.session.add(plan)
    db.session.commit()
    return plan


# =============================================================================
# MEMBERSHIPS
# =============================================================================

def _get_member(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None or user.role != ROLE_MEMBER:
        raise AccountNotFoundError(f"Member account {user_id} not found")
    return user


def _coerce_date(value, field: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")


def assign_plan(user_id: int, plan_id: int, *, keep_payments: bool = False, start_date=None) -> Membership:
    """
    Put a live member on a plan.

    keep_payments=False retires the current membership as REPLACED and opens
    a new one, so the live balance starts from zero. A replaced membership
    is never current again, so cancelling the new one leaves no plan behind. keep_payments=True moves
    the current membership to the new plan and dates, payments untouched.

    The member's registry record gets the same plan through
    ledger_service.apply_plan with the same keep/reset choice; a member with
    no record gets one.

    Raises:
        AccountNotFoundError: unknown or non-member account
        PlanNotFoundError: unknown or inactive plan
    """
    user = _get_member(user_id)
    plan = ledger_service.get_active_plan(plan_id)
    start = _coerce_date(start_date, "start_date") or utcnow().date()
    end = ledger_service.plan_end_date(start, plan)

    def _op():
        current = lock_for_update(current_membership_query(user_id)).first()

        if keep_payments and current is not None:
            membership = current
            membership.plan_id = plan.id
            membership.start_date = start
            membership.end_date = end
            membership.status = MEMBERSHIP_ACTIVE
        else:
            if current is not None:
                current.status = MEMBERSHIP_REPLACED
            membership = Membership(
                user_id=user_id,
                plan_id=plan.id,
                start_date=start,
                end_date=end,
                status=MEMBERSHIP_ACTIVE,
            )
            db.session.add(membership)

        record = registry_service.link_account_to_registry(user)
        ledger_service.apply_plan(
            record,
            plan_name=plan.name,
            plan_total_cents=plan.price_cents,
            start_date=start,
            end_date=end,
            keep_payments=keep_payments,
        )
        db.session.commit()
        return membership

    membership = run_with_retry(_op)
    current_app.logger.info(
        "Assigned plan %s to account %s (membership %s, keep_payments=%s)",
        plan.name, user_id, membership.id, keep_payments,
    )

    notification_service.send_membership_activation(
        to=user.email, name=user.name, plan_name=plan.name, end_date=end,
    )
    return membership


def cancel_plan(user_id: int, *, reset_payments: bool = False) -> Membership:
    """
    Block the member's current membership.

    The registry record's plan ends today; with reset_payments it is cleared
    along with its ledger. The in-app notification is written after commit
    and may fail without affecting the cancellation.
    """
    user = _get_member(user_id)
    today = utcnow().date()

    def _op():
        current = lock_for_update(current_membership_query(user_id)).first()
        if current is None:
            raise NoActiveMembershipError(f"Account {user_id} has no active membership")
        current.status = MEMBERSHIP_BLOCKED

        record = registry_service.find_record_for_account(user)
        if record is not None:
            ledger_service.clear_plan(record, reset_payments=reset_payments, today=today)

        db.session.commit()
        return current

    membership = run_with_retry(_op)
    current_app.logger.info("Cancelled membership %s for account %s", membership.id, user_id)

    plan_name = membership.plan.name if membership.plan else "membership"
    notification_service.notify_user(
        user_id,
        "Membership cancelled",
        f"Your {plan_name} plan has been cancelled.",
        notification_service.TYPE_MEMBERSHIP,
    )
    return membership


def expire_memberships(today: date | None = None) -> int:
    """ACTIVE memberships whose end date has passed become EXPIRED."""
    today = today or utcnow().date()

    def _op():
        rows = (
            db.session.query(Membership)
            .filter(Membership.status == MEMBERSHIP_ACTIVE, Membership.end_date < today)
            .all()
        )
        for membership in rows:
            membership.status = MEMBERSHIP_EXPIRED
        db.session.commit()
        return len(rows)

    count = run_with_retry(_op)
    if count:
        current_app.logger.info("Expired %s memberships", count)
    return count
