# Overview: Live-side payments: normalized payment rows recorded against a member's current membership.

"""
Live Payment Service

Live payments are the normalized counterpart of the registry ledger: one
membership_payments row per transaction, referencing the membership it pays
for. The reconciler later folds these rows into the member's registry record
and stamps reconciled_at on each one.

DESIGN PRINCIPLES:
- Insert-only: a live payment row is never edited after it is written
- Amount and mode are validated before anything touches the session
- The receipt email is sent after commit and can never undo the payment
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import User, Membership, MembershipPayment
from ..models.memberships import RETIRED_STATUSES
from ..validation import ValidationError, NotFoundError, parse_amount_cents
from fitsense.time_utils import utcnow, parse_iso_datetime
from . import notification_service


class InvalidAmountError(ValidationError):
    """Payment amount missing, non-integer or not positive."""


class AccountNotFoundError(NotFoundError):
    """No live account with the given id."""


class NoActiveMembershipError(NotFoundError):
    """The live account has no current (non-retired) membership."""


# =============================================================================
# PAYMENT MODES (CONSTANTS)
# =============================================================================

PAYMENT_MODE_CASH = "CASH"
PAYMENT_MODE_UPI = "UPI"
PAYMENT_MODE_CARD = "CARD"
PAYMENT_MODE_BANK_TRANSFER = "BANK_TRANSFER"
PAYMENT_MODE_ONLINE = "ONLINE"

VALID_PAYMENT_MODES = [
    PAYMENT_MODE_CASH,
    PAYMENT_MODE_UPI,
    PAYMENT_MODE_CARD,
    PAYMENT_MODE_BANK_TRANSFER,
    PAYMENT_MODE_ONLINE,
]

DEFAULT_PAYMENT_MODE = PAYMENT_MODE_CASH


def normalize_payment_mode(value) -> str:
    """
    Map user input onto the closed set of payment modes.

    Blank means cash. "upi", "Bank-Transfer" and "bank transfer" are all
    accepted; anything outside the set is a ValidationError.
    """
    if value is None:
        return DEFAULT_PAYMENT_MODE
    mode = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    if not mode:
        return DEFAULT_PAYMENT_MODE
    if mode not in VALID_PAYMENT_MODES:
        raise ValidationError(f"Invalid payment_mode: {value}. Must be one of {VALID_PAYMENT_MODES}")
    return mode


def validate_positive_amount(value, field: str = "amount_cents") -> int:
    try:
        cents = parse_amount_cents(value, field)
    except ValidationError as exc:
        raise InvalidAmountError(str(exc))
    if cents <= 0:
        raise InvalidAmountError(f"{field} must be greater than 0")
    return cents


# =============================================================================
# MEMBERSHIP LOOKUP
# =============================================================================

def current_membership_query(user_id: int):
    return (
        db.session.query(Membership)
        .filter(Membership.user_id == user_id, Membership.status.notin_(RETIRED_STATUSES))
        .order_by(Membership.created_at.desc(), Membership.id.desc())
    )


def get_current_membership(user_id: int) -> Membership | None:
    """Most recently created membership that is neither blocked nor replaced, or None."""
    return current_membership_query(user_id).first()


def membership_paid_cents(membership_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(MembershipPayment.amount_cents), 0))
        .filter(MembershipPayment.membership_id == membership_id)
        .scalar()
    )
    return int(total or 0)


def membership_payments(membership_id: int) -> list[MembershipPayment]:
    return (
        db.session.query(MembershipPayment)
        .filter(MembershipPayment.membership_id == membership_id)
        .order_by(MembershipPayment.paid_at.asc(), MembershipPayment.id.asc())
        .all()
    )


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def record_live_payment(
    user_id: int,
    amount_cents,
    payment_mode: str | None = None,
    notes: str | None = None,
    *,
    membership_id: int | None = None,
    received_by_user_id: int | None = None,
    paid_at: str | None = None,
) -> MembershipPayment:
    """
    Record one payment against a live membership.

    The membership defaults to the account's current one. Passing
    membership_id pins an older membership of the same account.

    Raises:
        InvalidAmountError: amount is not a positive integer of cents
        ValidationError: unknown payment mode or bad paid_at
        AccountNotFoundError: no such account
        NoActiveMembershipError: nothing to pay for
    """
    cents = validate_positive_amount(amount_cents)
    mode = normalize_payment_mode(payment_mode)
    try:
        when = parse_iso_datetime(paid_at) if paid_at else None
    except ValueError:
        raise ValidationError("paid_at must be an ISO-8601 datetime")

    user = db.session.get(User, user_id)
    if user is None:
        raise AccountNotFoundError(f"Account {user_id} not found")

    if membership_id is not None:
        membership = (
            db.session.query(Membership)
            .filter(Membership.id == membership_id, Membership.user_id == user_id)
            .first()
        )
        if membership is None:
            raise NoActiveMembershipError(f"Membership {membership_id} not found for account {user_id}")
    else:
        membership = get_current_membership(user_id)
        if membership is None:
            raise NoActiveMembershipError(f"Account {user_id} has no active membership")

    payment = MembershipPayment(
        membership_id=membership.id,
        user_id=user_id,
        amount_cents=cents,
        payment_mode=mode,
        notes=(notes or "").strip() or None,
        paid_at=when or utcnow(),
        received_by_user_id=received_by_user_id,
    )
    db.session.add(payment)
    db.session.commit()

    notification_service.send_payment_receipt(
        to=user.email,
        name=user.name,
        amount_cents=cents,
        payment_mode=mode,
        paid_cents=membership_paid_cents(membership.id),
        plan_total_cents=membership.plan.price_cents if membership.plan else 0,
        plan_name=membership.plan.name if membership.plan else None,
        receipt_no=f"LP-{payment.id}",
    )
    notification_service.notify_user(
        user_id,
        "Payment received",
        f"We received {notification_service.format_cents(cents)} by {mode}.",
        notification_service.TYPE_PAYMENT,
    )
    return payment


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

def _membership_block(membership: Membership) -> dict:
    payments = membership_payments(membership.id)
    paid = sum(p.amount_cents for p in payments)
    price = membership.plan.price_cents if membership.plan else 0
    data = membership.to_dict()
    data["paid_cents"] = paid
    data["remaining_cents"] = price - paid
    data["payments"] = [p.to_dict() for p in payments]
    return data


def get_member_payments(user_id: int) -> dict:
    """
    Payment picture for one live account: the current membership with its
    running total, plus every older membership with its own payments.
    """
    user = db.session.get(User, user_id)
    if user is None:
        raise AccountNotFoundError(f"Account {user_id} not found")

    current = get_current_membership(user_id)
    history = (
        db.session.query(Membership)
        .filter(Membership.user_id == user_id)
        .order_by(Membership.created_at.desc(), Membership.id.desc())
        .all()
    )
    return {
        "user": user.to_dict(),
        "current_membership": _membership_block(current) if current else None,
        "history": [_membership_block(m) for m in history if current is None or m.id != current.id],
    }
