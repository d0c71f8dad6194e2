from __future__ import annotations

from ..extensions import db
from fitsense.time_utils import to_utc_z, to_iso_date


MEMBERSHIP_ACTIVE = "ACTIVE"
MEMBERSHIP_EXPIRED = "EXPIRED"
MEMBERSHIP_BLOCKED = "BLOCKED"
# Superseded by a fresh membership on plan reassignment; never current again
MEMBERSHIP_REPLACED = "REPLACED"

# Statuses that can never be a member's current membership
RETIRED_STATUSES = (MEMBERSHIP_BLOCKED, MEMBERSHIP_REPLACED)


class Plan(db.Model):
    """Membership plan offered by the gym."""
    __tablename__ = "plans"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    duration_days = db.Column(db.Integer, nullable=False, default=30)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price_cents": self.price_cents,
            "duration_days": self.duration_days,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Membership(db.Model):
    """
    A live account's subscription to a plan.

    At most one current (not blocked, not replaced) membership per account
    at a time. This is business logic in membership_service, not a
    constraint, because retired rows are kept as history.
    """
    __tablename__ = "memberships"
    __table_args__ = (
        db.Index("ix_memberships_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=False, index=True)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    # ACTIVE, EXPIRED, BLOCKED, REPLACED
    status = db.Column(db.String(16), nullable=False, default=MEMBERSHIP_ACTIVE, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("memberships", lazy=True, cascade="all, delete-orphan"))
    plan = db.relationship("Plan")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan.name if self.plan else None,
            "plan_price_cents": self.plan.price_cents if self.plan else 0,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class MembershipPayment(db.Model):
    """
    Normalized live payment, one row per transaction against a membership.

    reconciled_at is set when the reconciler has folded this payment into
    the registry ledger of the member's record.
    """
    __tablename__ = "membership_payments"
    __table_args__ = (
        db.Index("ix_membership_payments_paid_at", "paid_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    membership_id = db.Column(db.Integer, db.ForeignKey("memberships.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_mode = db.Column(db.String(32), nullable=False, default="CASH")
    notes = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    received_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    membership = db.relationship("Membership", backref=db.backref("payments", lazy=True, cascade="all, delete-orphan"))
    user = db.relationship("User", foreign_keys=[user_id])
    received_by = db.relationship("User", foreign_keys=[received_by_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "membership_id": self.membership_id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "payment_mode": self.payment_mode,
            "notes": self.notes or "",
            "paid_at": to_utc_z(self.paid_at),
            "received_by_user_id": self.received_by_user_id,
            "received_by_name": self.received_by.name if self.received_by else None,
            "reconciled_at": to_utc_z(self.reconciled_at) if self.reconciled_at else None,
        }
