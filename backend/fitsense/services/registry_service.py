# backend/fitsense/services/registry_service.py
"""
Member Registry Service

CRUD over MemberRecord, the gym's own list of members (signed up or walk-in).

RULES:
- email and phone stay unique across records; interactive edits that would
  collide are rejected with DuplicateIdentityError (the reconciler resolves
  phone collisions itself instead)
- paid_cents and payment_installments are never writable here; they change
  only through ledger_service
- a record that is or was linked to a live account cannot be deleted
"""
from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy import case, func, or_

from ..extensions import db
from ..models import MemberRecord, User
from ..models.accounts import ROLE_MEMBER
from ..models.registry import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_EXPIRING,
    SUBSCRIPTION_NONE,
)
from ..validation import (
    ConflictError,
    ForbiddenError,
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_member_record,
    normalize_email,
    normalize_phone,
    validate_payload,
)
from fitsense.time_utils import utcnow
from .concurrency import run_with_retry, lock_for_update
from .ledger_service import (
    ENTRY_SOURCE_MANUAL,
    RecordNotFoundError,
    build_entry,
    new_entry_id,
    replace_entries,
)
from .payment_service import validate_positive_amount, normalize_payment_mode


class DuplicateIdentityError(ConflictError):
    """Another record already holds this email or phone."""


class RecordLinkedError(ForbiddenError):
    """Linked records are removed through the live account, not here."""


MEMBER_RECORD_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "email",
        "phone",
        "plan_name",
        "plan_total_cents",
        "membership_start_date",
        "membership_end_date",
        "notes",
    },
    required_on_create={"name"},
)

RECORD_FILTERS = {
    "all",
    "signed-up",
    "not-signed-up",
    "pending-payment",
    "fully-paid",
    "active-subscription",
    "expired-subscription",
    "no-subscription",
    "expiring-soon",
}

# Expired first, then expiring, then everything else
_STATUS_RANK = {SUBSCRIPTION_EXPIRED: 0, SUBSCRIPTION_EXPIRING: 1}


# =============================================================================
# IDENTITY CHECKS
# =============================================================================

def _check_duplicates(email: str | None, phone: str | None, exclude_id: int | None = None) -> None:
    if email:
        q = db.session.query(MemberRecord.id).filter(MemberRecord.email == email)
        if exclude_id is not None:
            q = q.filter(MemberRecord.id != exclude_id)
        if q.first() is not None:
            raise DuplicateIdentityError(f"A member with email {email} already exists")
    if phone:
        q = db.session.query(MemberRecord.id).filter(MemberRecord.phone == phone)
        if exclude_id is not None:
            q = q.filter(MemberRecord.id != exclude_id)
        if q.first() is not None:
            raise DuplicateIdentityError(f"A member with phone {phone} already exists")


def _phone_taken(phone: str | None, exclude_id: int | None = None) -> bool:
    if not phone:
        return False
    q = db.session.query(MemberRecord.id).filter(MemberRecord.phone == phone)
    if exclude_id is not None:
        q = q.filter(MemberRecord.id != exclude_id)
    return q.first() is not None


def _email_taken(email: str | None, exclude_id: int | None = None) -> bool:
    if not email:
        return False
    q = db.session.query(MemberRecord.id).filter(MemberRecord.email == email)
    if exclude_id is not None:
        q = q.filter(MemberRecord.id != exclude_id)
    return q.first() is not None


def find_unlinked_account(email: str | None, phone: str | None) -> User | None:
    """Member account matching email or phone that no record links to yet."""
    conditions = []
    if email:
        conditions.append(func.lower(User.email) == email)
    if phone:
        conditions.append(User.phone == phone)
    if not conditions:
        return None
    linked_ids = db.select(MemberRecord.user_id).where(MemberRecord.user_id.isnot(None))
    return (
        db.session.query(User)
        .filter(User.role == ROLE_MEMBER, or_(*conditions), User.id.notin_(linked_ids))
        .order_by(User.id.asc())
        .first()
    )


# =============================================================================
# CRUD
# =============================================================================

def get_record(record_id: int) -> MemberRecord:
    record = db.session.get(MemberRecord, record_id)
    if record is None:
        raise RecordNotFoundError(f"Member record {record_id} not found")
    return record


def create_record(
    payload: dict,
    *,
    initial_payment_cents=None,
    payment_mode: str | None = None,
    recorded_by: str | None = None,
) -> MemberRecord:
    """
    Create a walk-in (or pre-signup) member record.

    An optional initial payment becomes the first ledger entry. When a member
    account with the same email or phone exists and is not yet linked, the new
    record is linked to it.

    Raises:
        ValidationError: bad payload or initial payment
        DuplicateIdentityError: email or phone already on another record
    """
    patch = validate_payload(model=MemberRecord, payload=payload, policy=MEMBER_RECORD_POLICY, partial=False)
    enforce_rules_member_record(patch)
    if not patch.get("name"):
        raise ValidationError("name is required")

    initial = None
    if initial_payment_cents not in (None, "", 0):
        initial = validate_positive_amount(initial_payment_cents, "initial_payment_cents")
    mode = normalize_payment_mode(payment_mode)

    _check_duplicates(patch.get("email"), patch.get("phone"))

    record = MemberRecord(**patch)
    record.plan_total_cents = patch.get("plan_total_cents") or 0
    record.is_signed_up = False
    replace_entries(record, [])

    account = find_unlinked_account(patch.get("email"), patch.get("phone"))
    if account is not None:
        record.user_id = account.id
        record.is_signed_up = True

    if initial is not None:
        replace_entries(record, [
            build_entry(
                entry_id=new_entry_id([]),
                amount_cents=initial,
                payment_mode=mode,
                notes="Initial payment",
                paid_at=utcnow(),
                recorded_by=recorded_by,
                source=ENTRY_SOURCE_MANUAL,
            )
        ])

    db.session.add(record)
    db.session.commit()
    return record


def update_record(record_id: int, payload: dict) -> MemberRecord:
    """
    Partial update of identity, plan, date and notes fields.

    Only fields whose value actually changes are assigned.
    """
    patch = validate_payload(model=MemberRecord, payload=payload, policy=MEMBER_RECORD_POLICY, partial=True)
    if "name" in patch and not patch["name"]:
        raise ValidationError("name cannot be blank")
    enforce_rules_member_record(patch)

    get_record(record_id)
    _check_duplicates(patch.get("email"), patch.get("phone"), exclude_id=record_id)

    def _op():
        record = lock_for_update(db.session.query(MemberRecord).filter_by(id=record_id)).first()
        if record is None:
            raise RecordNotFoundError(f"Member record {record_id} not found")

        start = patch.get("membership_start_date", record.membership_start_date)
        end = patch.get("membership_end_date", record.membership_end_date)
        if start and end and end < start:
            raise ValidationError("membership_end_date must not be before membership_start_date")

        for key, value in patch.items():
            if getattr(record, key) != value:
                setattr(record, key, value)
        if record.plan_total_cents is None:
            record.plan_total_cents = 0

        if record.user_id is None:
            account = find_unlinked_account(record.email, record.phone)
            if account is not None:
                record.user_id = account.id
                record.is_signed_up = True

        db.session.commit()
        return record

    return run_with_retry(_op)


def delete_record(record_id: int) -> None:
    record = get_record(record_id)
    if record.is_signed_up or record.user_id is not None:
        raise RecordLinkedError("Member is linked to an account; delete the account instead")
    db.session.delete(record)
    db.session.commit()


# =============================================================================
# LISTING
# =============================================================================

def _matches_filter(record: MemberRecord, filter_: str, status: str) -> bool:
    if filter_ == "all":
        return True
    if filter_ == "signed-up":
        return bool(record.is_signed_up)
    if filter_ == "not-signed-up":
        return not record.is_signed_up
    if filter_ == "pending-payment":
        return record.remaining_cents > 0
    if filter_ == "fully-paid":
        return record.plan_total_cents > 0 and record.remaining_cents <= 0
    if filter_ == "active-subscription":
        return status in (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRING)
    if filter_ == "expired-subscription":
        return status == SUBSCRIPTION_EXPIRED
    if filter_ == "no-subscription":
        return status == SUBSCRIPTION_NONE
    if filter_ == "expiring-soon":
        return status == SUBSCRIPTION_EXPIRING
    return False


def list_records(
    search: str | None = None,
    filter_: str = "all",
    *,
    today: date | None = None,
    expiring_days: int = 7,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Registry listing for the admin dashboard.

    Rows carry subscription_status and are ordered expired, expiring, then
    the rest, newest first within each group.
    """
    filter_ = (filter_ or "all").strip().lower()
    if filter_ not in RECORD_FILTERS:
        raise ValidationError(f"Unknown filter: {filter_}")
    today = today or utcnow().date()

    q = db.session.query(MemberRecord)
    if search and search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.filter(or_(
            func.lower(MemberRecord.name).like(like),
            func.lower(MemberRecord.email).like(like),
            MemberRecord.phone.like(like),
        ))

    rows = []
    for record in q.all():
        status = record.subscription_status(today, expiring_days)
        if _matches_filter(record, filter_, status):
            rows.append((record, status))

    rows.sort(key=lambda pair: (_STATUS_RANK.get(pair[1], 2), -(pair[0].id or 0)))
    items = [record.to_dict(today) for record, _ in rows]

    if page is None:
        return {"items": items, "count": len(items)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)
    total = len(items)
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    window = items[(page - 1) * per_page: page * per_page]
    return {
        "items": window,
        "count": len(window),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def registry_stats(today: date | None = None, expiring_days: int = 7) -> dict:
    """
    Counts and money sums over the whole registry.

    Pending only counts positive remaining balances; overpaid records are
    summed separately instead of cancelling out pending money.
    """
    today = today or utcnow().date()
    remaining = MemberRecord.plan_total_cents - MemberRecord.paid_cents

    row = db.session.query(
        func.count(MemberRecord.id),
        func.coalesce(func.sum(case((MemberRecord.is_signed_up.is_(True), 1), else_=0)), 0),
        func.coalesce(func.sum(MemberRecord.plan_total_cents), 0),
        func.coalesce(func.sum(MemberRecord.paid_cents), 0),
        func.coalesce(func.sum(case((remaining > 0, remaining), else_=0)), 0),
        func.coalesce(func.sum(case((remaining > 0, 1), else_=0)), 0),
        func.coalesce(func.sum(case((remaining < 0, -remaining), else_=0)), 0),
        func.coalesce(func.sum(case((remaining < 0, 1), else_=0)), 0),
    ).one()

    soon = today + timedelta(days=expiring_days)
    end = MemberRecord.membership_end_date
    status_row = db.session.query(
        func.coalesce(func.sum(case((end > soon, 1), else_=0)), 0),
        func.coalesce(func.sum(case(((end >= today) & (end <= soon), 1), else_=0)), 0),
        func.coalesce(func.sum(case((end < today, 1), else_=0)), 0),
        func.coalesce(func.sum(case((end.is_(None), 1), else_=0)), 0),
    ).one()

    total = int(row[0] or 0)
    signed_up = int(row[1] or 0)
    return {
        "total_members": total,
        "signed_up": signed_up,
        "not_signed_up": total - signed_up,
        "expected_cents": int(row[2] or 0),
        "collected_cents": int(row[3] or 0),
        "pending_cents": int(row[4] or 0),
        "pending_count": int(row[5] or 0),
        "overpaid_cents": int(row[6] or 0),
        "overpaid_count": int(row[7] or 0),
        "active_subscriptions": int(status_row[0] or 0),
        "expiring_subscriptions": int(status_row[1] or 0),
        "expired_subscriptions": int(status_row[2] or 0),
        "no_subscription": int(status_row[3] or 0),
    }


# =============================================================================
# ACCOUNT LINKING
# =============================================================================

def find_record_for_account(user: User) -> MemberRecord | None:
    record = db.session.query(MemberRecord).filter(MemberRecord.user_id == user.id).first()
    if record is not None:
        return record
    email = normalize_email(user.email) if user.email else None
    if email:
        return (
            db.session.query(MemberRecord)
            .filter(MemberRecord.email == email, MemberRecord.user_id.is_(None))
            .first()
        )
    return None


def link_account_to_registry(user: User) -> MemberRecord:
    """
    Give a live account a registry record, without committing.

    An unlinked record matching the account's email or phone is claimed;
    otherwise a new record is created. A phone or email already held by a
    different record is left off the new record rather than violating
    uniqueness.
    """
    existing = db.session.query(MemberRecord).filter(MemberRecord.user_id == user.id).first()
    if existing is not None:
        return existing

    email = normalize_email(user.email) if user.email else None
    phone = normalize_phone(user.phone)

    conditions = []
    if email:
        conditions.append(MemberRecord.email == email)
    if phone:
        conditions.append(MemberRecord.phone == phone)

    record = None
    if conditions:
        record = (
            db.session.query(MemberRecord)
            .filter(MemberRecord.user_id.is_(None), or_(*conditions))
            .order_by(MemberRecord.id.asc())
            .first()
        )

    if record is not None:
        record.user_id = user.id
        record.is_signed_up = True
        if record.email is None and email and not _email_taken(email, exclude_id=record.id):
            record.email = email
        if record.phone is None and phone and not _phone_taken(phone, exclude_id=record.id):
            record.phone = phone
        db.session.flush()
        return record

    record = MemberRecord(
        user_id=user.id,
        name=user.name,
        email=None if _email_taken(email) else email,
        phone=None if _phone_taken(phone) else phone,
        plan_total_cents=0,
        is_signed_up=True,
    )
    replace_entries(record, [])
    db.session.add(record)
    db.session.flush()
    return record
