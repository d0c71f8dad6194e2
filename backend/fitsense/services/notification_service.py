"""
Side-effect collaborators: member emails and in-app notifications.

Every function here is best-effort. A failure is logged and swallowed so the
payment, plan change or signup that triggered it is never rolled back.
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Notification


TYPE_MEMBERSHIP = "MEMBERSHIP"
TYPE_PAYMENT = "PAYMENT"
TYPE_WELCOME = "WELCOME"


def format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def _dispatch_email(to: str | None, subject: str, body: str) -> bool:
    if not to:
        return False
    dispatcher = current_app.config.get("EMAIL_DISPATCHER")
    try:
        if dispatcher is None:
            current_app.logger.info("Email to %s: %s", to, subject)
        else:
            dispatcher(to, subject, body)
        return True
    except Exception:
        current_app.logger.exception("Failed to send email %r to %s", subject, to)
        return False


def send_payment_receipt(
    *,
    to: str | None,
    name: str,
    amount_cents: int,
    payment_mode: str,
    paid_cents: int,
    plan_total_cents: int,
    plan_name: str | None,
    receipt_no: str,
) -> bool:
    body = (
        f"Hi {name},\n\n"
        f"We received {format_cents(amount_cents)} by {payment_mode} "
        f"for {plan_name or 'your membership'}.\n"
        f"Paid so far: {format_cents(paid_cents)} of {format_cents(plan_total_cents)}.\n"
        f"Receipt: {receipt_no}\n"
    )
    return _dispatch_email(to, f"Payment receipt {receipt_no}", body)


def send_membership_activation(*, to: str | None, name: str, plan_name: str, end_date: date) -> bool:
    body = (
        f"Hi {name},\n\n"
        f"Your {plan_name} membership is active until {end_date.isoformat()}.\n"
    )
    return _dispatch_email(to, "Membership activated", body)


def notify_user(user_id: int, title: str, message: str, type_: str) -> bool:
    """
    Create an in-app notification in its own transaction.

    Call after the parent operation has committed; a failure here rolls back
    only the notification.
    """
    try:
        db.session.add(Notification(user_id=user_id, title=title, message=message, type=type_))
        db.session.commit()
        return True
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create notification for user %s", user_id)
        return False
