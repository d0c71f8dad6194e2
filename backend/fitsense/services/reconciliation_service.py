# Overview: Fold live accounts, memberships and payments into the member registry.

"""
Registry Reconciliation

Walks every member account and makes its registry record an exact mirror of
the live side, then unlinks records whose account is gone.

RULES:
- accounts are processed one at a time, in id order, each in its own
  transaction; a failing account is rolled back, counted and reported, and
  the run continues
- lookup prefers the record already linked to the account, then the record
  with the account's email; two different matches is a conflict
- the account always wins a phone number it holds: any other record with
  that phone has it cleared (reported in details for operator review)
- live plan/price only overwrite the record when the plan price is non-zero;
  the ledger is only replaced when the live side has payments
- only changed columns are assigned, and live entries have deterministic ids,
  so a second run with no live-side change writes nothing
- orphan handling is one bulk UPDATE, independent of per-account outcomes
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models import MemberRecord, User
from ..models.accounts import ROLE_MEMBER
from ..validation import ConflictError, normalize_email, normalize_phone
from fitsense.time_utils import utcnow
from .ledger_service import entry_from_live_payment, replace_entries
from .payment_service import AccountNotFoundError, get_current_membership, membership_payments


OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_SKIPPED = "skipped"


@dataclass
class ReconciliationReport:
    detail_limit: int = 20
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    orphaned: int = 0
    failed: int = 0
    skipped: int = 0
    total_accounts: int = 0
    details: list[str] = field(default_factory=list)

    def add_detail(self, line: str) -> None:
        if len(self.details) < self.detail_limit:
            self.details.append(line)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "orphaned": self.orphaned,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_accounts": self.total_accounts,
            "details": list(self.details),
        }


def _assign(record: MemberRecord, attr: str, value) -> bool:
    if getattr(record, attr) == value:
        return False
    setattr(record, attr, value)
    return True


def _find_record(user: User, email: str) -> MemberRecord | None:
    by_user = db.session.query(MemberRecord).filter(MemberRecord.user_id == user.id).first()
    by_email = db.session.query(MemberRecord).filter(MemberRecord.email == email).first()
    if by_user is not None and by_email is not None and by_user.id != by_email.id:
        raise ConflictError(
            f"record {by_user.id} is linked to this account but record {by_email.id} holds its email"
        )
    return by_user or by_email


def _release_phone(phone: str | None, keep_id: int | None, details: list[str]) -> None:
    if not phone:
        return
    q = db.session.query(MemberRecord).filter(MemberRecord.phone == phone)
    if keep_id is not None:
        q = q.filter(MemberRecord.id != keep_id)
    for other in q.all():
        other.phone = None
        details.append(f"phone {phone} removed from record {other.id} ({other.name})")
    db.session.flush()


def _reconcile_user(user: User, details: list[str]) -> str:
    """Steps for one account. Caller commits or rolls back."""
    email = normalize_email(user.email)
    phone = normalize_phone(user.phone)

    membership = get_current_membership(user.id)
    payments = membership_payments(membership.id) if membership is not None else []
    candidates = [entry_from_live_payment(p) for p in payments]
    plan = membership.plan if membership is not None else None

    record = _find_record(user, email)
    _release_phone(phone, record.id if record is not None else None, details)

    now = utcnow()
    if record is None:
        record = MemberRecord(
            user_id=user.id,
            name=user.name,
            email=email,
            phone=phone,
            plan_name=plan.name if plan else None,
            plan_total_cents=plan.price_cents if plan else 0,
            membership_start_date=membership.start_date if membership else None,
            membership_end_date=membership.end_date if membership else None,
            is_signed_up=True,
        )
        replace_entries(record, candidates)
        db.session.add(record)
        outcome = OUTCOME_CREATED
    else:
        changed = False
        changed |= _assign(record, "user_id", user.id)
        changed |= _assign(record, "name", user.name)
        changed |= _assign(record, "email", email)
        changed |= _assign(record, "phone", phone)
        if plan is not None and plan.price_cents > 0:
            changed |= _assign(record, "plan_name", plan.name)
            changed |= _assign(record, "plan_total_cents", plan.price_cents)
        if membership is not None:
            changed |= _assign(record, "membership_start_date", membership.start_date)
            changed |= _assign(record, "membership_end_date", membership.end_date)
        existing = list(record.payment_installments or [])
        if candidates and existing != candidates:
            live_ids = {c["id"] for c in candidates}
            dropped = [e for e in existing if str(e.get("id")) not in live_ids]
            if dropped:
                details.append(
                    f"{email}: {len(dropped)} registry-only entr{'y' if len(dropped) == 1 else 'ies'} "
                    f"replaced by live payments"
                )
            replace_entries(record, candidates)
            changed = True
        changed |= _assign(record, "is_signed_up", True)
        outcome = OUTCOME_UPDATED if changed else OUTCOME_UNCHANGED

    for payment in payments:
        if payment.reconciled_at is None:
            payment.reconciled_at = now

    db.session.flush()
    return outcome


def reconcile_account(user_id: int) -> dict:
    """
    Reconcile a single member account and commit.

    Used for incremental runs after one account changed. Returns
    {"outcome": ..., "details": [...]}.
    """
    user = db.session.get(User, user_id)
    if user is None or user.role != ROLE_MEMBER:
        raise AccountNotFoundError(f"Member account {user_id} not found")
    if not (user.email or "").strip():
        return {"outcome": OUTCOME_SKIPPED, "details": [f"account {user_id} has no email"]}

    details: list[str] = []
    try:
        outcome = _reconcile_user(user, details)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"outcome": outcome, "details": details}


def _mark_orphans() -> int:
    member_ids = db.select(User.id).where(User.role == ROLE_MEMBER)
    orphan_filter = or_(
        and_(MemberRecord.user_id.isnot(None), MemberRecord.user_id.notin_(member_ids)),
        and_(MemberRecord.user_id.is_(None), MemberRecord.is_signed_up.is_(True)),
    )
    count = (
        db.session.query(MemberRecord)
        .filter(orphan_filter)
        .update(
            {
                MemberRecord.is_signed_up: False,
                MemberRecord.user_id: None,
                MemberRecord.version_id: MemberRecord.version_id + 1,
                MemberRecord.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return int(count or 0)


def run_reconciliation(detail_limit: int | None = None) -> ReconciliationReport:
    """
    Full sweep over every member account, then the orphan pass.

    Only a failure to list accounts or to run the orphan update aborts the
    run; per-account failures are counted in the report.
    """
    if detail_limit is None:
        detail_limit = current_app.config.get("RECONCILIATION_DETAIL_LIMIT", 20)
    report = ReconciliationReport(detail_limit=detail_limit)

    account_ids = [
        row[0]
        for row in db.session.query(User.id).filter(User.role == ROLE_MEMBER).order_by(User.id.asc()).all()
    ]
    report.total_accounts = len(account_ids)

    for user_id in account_ids:
        user = db.session.get(User, user_id)
        if user is None:
            report.skipped += 1
            continue
        if not (user.email or "").strip():
            report.skipped += 1
            continue

        label = user.email
        details: list[str] = []
        try:
            outcome = _reconcile_user(user, details)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            report.failed += 1
            current_app.logger.warning("Reconciliation failed for account %s: %s", user_id, exc)
            report.add_detail(f"{label}: failed ({exc})")
            continue

        setattr(report, outcome, getattr(report, outcome) + 1)
        for line in details:
            report.add_detail(line)
        if outcome == OUTCOME_CREATED:
            report.add_detail(f"{label}: created registry record")

    report.orphaned = _mark_orphans()

    current_app.logger.info(
        "Reconciliation finished: %s created, %s updated, %s unchanged, %s orphaned, %s failed, %s skipped",
        report.created, report.updated, report.unchanged, report.orphaned, report.failed, report.skipped,
    )
    return report
