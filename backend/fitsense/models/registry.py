from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy.ext.hybrid import hybrid_property

from ..extensions import db
from fitsense.time_utils import to_utc_z, to_iso_date


SUBSCRIPTION_NONE = "none"
SUBSCRIPTION_EXPIRED = "expired"
SUBSCRIPTION_EXPIRING = "expiring"
SUBSCRIPTION_ACTIVE = "active"


class MemberRecord(db.Model):
    """
    Registry row: the gym's own record of one human, signed up or walk-in.

    INVARIANTS:
    - email and phone are unique when present (NULLs never collide)
    - paid_cents == sum(entry["amount_cents"] for entry in payment_installments);
      only ledger_service.replace_entries writes either field
    - remaining_cents is derived; negative means overpaid

    payment_installments is the embedded ledger, a JSON list of entries.
    Writes go through the version_id compare-and-swap so two concurrent
    read-modify-write cycles cannot silently drop an entry.
    """
    __tablename__ = "member_records"
    __table_args__ = (
        db.Index("ix_member_records_signed_up", "is_signed_up"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True, index=True)
    phone = db.Column(db.String(32), nullable=True, unique=True, index=True)

    plan_name = db.Column(db.String(255), nullable=True)
    plan_total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_installments = db.Column(db.JSON, nullable=False, default=list)

    membership_start_date = db.Column(db.Date, nullable=True)
    membership_end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_signed_up = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("member_record", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<MemberRecord id={self.id} name={self.name!r} paid={self.paid_cents}>"

    @hybrid_property
    def remaining_cents(self):
        return self.plan_total_cents - self.paid_cents

    def subscription_status(self, today: date, expiring_days: int = 7) -> str:
        end = self.membership_end_date
        if end is None:
            return SUBSCRIPTION_NONE
        if end < today:
            return SUBSCRIPTION_EXPIRED
        if end <= today + timedelta(days=expiring_days):
            return SUBSCRIPTION_EXPIRING
        return SUBSCRIPTION_ACTIVE

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "paid_cents": self.paid_cents,
            "plan_total_cents": self.plan_total_cents,
            "remaining_cents": self.remaining_cents,
            "entry_count": len(self.payment_installments or []),
        }

    def to_dict(self, today: date | None = None) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "plan_name": self.plan_name,
            "plan_total_cents": self.plan_total_cents,
            "paid_cents": self.paid_cents,
            "remaining_cents": self.remaining_cents,
            "payment_installments": list(self.payment_installments or []),
            "membership_start_date": to_iso_date(self.membership_start_date),
            "membership_end_date": to_iso_date(self.membership_end_date),
            "notes": self.notes,
            "is_signed_up": self.is_signed_up,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if today is not None:
            data["subscription_status"] = self.subscription_status(today)
        return data
