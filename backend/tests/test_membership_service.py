"""
Live membership and live payment tests.
"""

from datetime import timedelta

import pytest

from fitsense.extensions import db
from fitsense.models import Membership, MembershipPayment, MemberRecord, Notification
from fitsense.models.memberships import MEMBERSHIP_ACTIVE, MEMBERSHIP_BLOCKED, MEMBERSHIP_EXPIRED, MEMBERSHIP_REPLACED
from fitsense.services import membership_service, notification_service, payment_service
from fitsense.services.ledger_service import PlanNotFoundError
from fitsense.services.payment_service import (
    AccountNotFoundError,
    InvalidAmountError,
    NoActiveMembershipError,
)
from fitsense.validation import ConflictError, ValidationError
from fitsense.time_utils import utcnow

from conftest import make_live_payment, make_member, make_membership, make_record


def _record_for(user):
    return db.session.query(MemberRecord).filter_by(user_id=user.id).first()


class TestPlans:
    def test_create_and_list(self, db_session):
        membership_service.create_plan("Annual", 900000, 365)
        membership_service.create_plan("Monthly", 100000, 30)
        names = [p.name for p in membership_service.list_plans()]
        assert names == ["Monthly", "Annual"]

    def test_duplicate_plan_name(self, db_session, monthly_plan):
        with pytest.raises(ConflictError):
            membership_service.create_plan("Monthly", 1, 30)

    @pytest.mark.parametrize("price,days", [(-1, 30), ("12.50", 30), (1000, 0), (1000, "abc")])
    def test_invalid_plan(self, db_session, price, days):
        with pytest.raises(ValidationError):
            membership_service.create_plan("Broken", price, days)

    def test_inactive_hidden_by_default(self, db_session, monthly_plan):
        monthly_plan.is_active = False
        db_session.commit()
        assert membership_service.list_plans() == []
        assert len(membership_service.list_plans(include_inactive=True)) == 1


class TestAssignPlan:
    def test_first_assignment_creates_membership_and_record(self, db_session, monthly_plan, sent_emails):
        user = make_member()

        membership = membership_service.assign_plan(user.id, monthly_plan.id)

        assert membership.status == MEMBERSHIP_ACTIVE
        assert membership.end_date == membership.start_date + timedelta(days=30)
        record = _record_for(user)
        assert record.plan_total_cents == 100000
        assert record.is_signed_up is True
        assert sent_emails and sent_emails[0][1] == "Membership activated"

    def test_reset_replaces_old_membership(self, db_session, monthly_plan, quarterly_plan):
        user = make_member()
        old = make_membership(user, monthly_plan)
        make_live_payment(old, 40000)
        make_record(email=user.email, user_id=user.id, is_signed_up=True,
                    plan_total_cents=100000, amounts=(40000,))

        new = membership_service.assign_plan(user.id, quarterly_plan.id, keep_payments=False)

        db_session.refresh(old)
        assert old.status == MEMBERSHIP_REPLACED
        assert new.id != old.id
        assert payment_service.membership_paid_cents(new.id) == 0
        record = _record_for(user)
        assert record.plan_total_cents == 270000
        assert record.paid_cents == 0
        assert record.payment_installments == []

    def test_keep_moves_current_membership(self, db_session, monthly_plan, quarterly_plan):
        user = make_member()
        old = make_membership(user, monthly_plan)
        make_live_payment(old, 40000)
        make_record(email=user.email, user_id=user.id, is_signed_up=True,
                    plan_total_cents=100000, amounts=(40000,))

        kept = membership_service.assign_plan(user.id, quarterly_plan.id, keep_payments=True)

        assert kept.id == old.id
        assert kept.plan_id == quarterly_plan.id
        assert payment_service.membership_paid_cents(kept.id) == 40000
        record = _record_for(user)
        assert record.plan_total_cents == 270000
        assert record.paid_cents == 40000
        assert record.remaining_cents == 230000

    def test_unknown_plan(self, db_session):
        user = make_member()
        with pytest.raises(PlanNotFoundError):
            membership_service.assign_plan(user.id, 12345)

    def test_unknown_account(self, db_session, monthly_plan):
        with pytest.raises(AccountNotFoundError):
            membership_service.assign_plan(12345, monthly_plan.id)


class TestCancelPlan:
    def test_cancel_blocks_and_notifies(self, db_session, monthly_plan):
        user = make_member()
        membership_service.assign_plan(user.id, monthly_plan.id)

        cancelled = membership_service.cancel_plan(user.id)

        assert cancelled.status == MEMBERSHIP_BLOCKED
        record = _record_for(user)
        assert record.membership_end_date == utcnow().date()
        assert record.plan_name == "Monthly"
        notes = db.session.query(Notification).filter_by(user_id=user.id).all()
        assert [n.title for n in notes] == ["Membership cancelled"]

    def test_cancel_with_reset_clears_record(self, db_session, monthly_plan):
        user = make_member()
        membership = make_membership(user, monthly_plan)
        make_record(email=user.email, user_id=user.id, is_signed_up=True,
                    plan_name="Monthly", plan_total_cents=100000, amounts=(40000,))
        make_live_payment(membership, 40000)

        membership_service.cancel_plan(user.id, reset_payments=True)

        record = _record_for(user)
        assert record.plan_name is None
        assert record.paid_cents == 0
        assert record.payment_installments == []
        # live payment history is kept
        assert db.session.query(MembershipPayment).filter_by(user_id=user.id).count() == 1

    def test_cancel_without_membership(self, db_session):
        user = make_member()
        with pytest.raises(NoActiveMembershipError):
            membership_service.cancel_plan(user.id)

    def test_replaced_membership_never_comes_back(self, db_session, monthly_plan, quarterly_plan):
        user = make_member()
        first = membership_service.assign_plan(user.id, monthly_plan.id)
        payment_service.record_live_payment(user.id, 50000)
        second = membership_service.assign_plan(user.id, quarterly_plan.id, keep_payments=False)
        payment_service.record_live_payment(user.id, 30000)

        membership_service.cancel_plan(user.id, reset_payments=True)

        assert db_session.get(Membership, first.id).status == MEMBERSHIP_REPLACED
        assert db_session.get(Membership, second.id).status == MEMBERSHIP_BLOCKED
        assert payment_service.get_current_membership(user.id) is None
        with pytest.raises(NoActiveMembershipError):
            payment_service.record_live_payment(user.id, 1000)
        with pytest.raises(NoActiveMembershipError):
            membership_service.cancel_plan(user.id)
        assert db.session.query(MembershipPayment).count() == 2

    def test_notification_failure_keeps_cancellation(self, db_session, monthly_plan, monkeypatch):
        user = make_member()
        membership_service.assign_plan(user.id, monthly_plan.id)

        def broken(**kwargs):
            raise RuntimeError("notification store down")

        monkeypatch.setattr(notification_service, "Notification", broken)
        cancelled = membership_service.cancel_plan(user.id)

        db_session.refresh(cancelled)
        assert cancelled.status == MEMBERSHIP_BLOCKED


class TestExpire:
    def test_only_past_active_memberships_expire(self, db_session, monthly_plan):
        today = utcnow().date()
        a = make_membership(make_member(name="A", email="a@example.com"), monthly_plan,
                            start=today - timedelta(days=40))
        b = make_membership(make_member(name="B", email="b@example.com"), monthly_plan,
                            start=today - timedelta(days=5))
        c = make_membership(make_member(name="C", email="c@example.com"), monthly_plan,
                            status=MEMBERSHIP_BLOCKED, start=today - timedelta(days=40))

        assert membership_service.expire_memberships(today) == 1

        assert db_session.get(Membership, a.id).status == MEMBERSHIP_EXPIRED
        assert db_session.get(Membership, b.id).status == MEMBERSHIP_ACTIVE
        assert db_session.get(Membership, c.id).status == MEMBERSHIP_BLOCKED


class TestLivePayments:
    def test_record_against_current_membership(self, db_session, monthly_plan, sent_emails):
        user = make_member()
        membership = make_membership(user, monthly_plan)

        payment = payment_service.record_live_payment(user.id, 30000, "card", "first half")

        assert payment.membership_id == membership.id
        assert payment.payment_mode == "CARD"
        assert payment.reconciled_at is None
        assert sent_emails[0][1] == f"Payment receipt LP-{payment.id}"

    def test_blocked_membership_is_not_current(self, db_session, monthly_plan):
        user = make_member()
        make_membership(user, monthly_plan, status=MEMBERSHIP_BLOCKED)
        with pytest.raises(NoActiveMembershipError):
            payment_service.record_live_payment(user.id, 30000)

    def test_unknown_account(self, db_session):
        with pytest.raises(AccountNotFoundError):
            payment_service.record_live_payment(999, 30000)

    @pytest.mark.parametrize("amount", [0, -1, "1.5", None])
    def test_invalid_amount_writes_nothing(self, db_session, monthly_plan, amount):
        user = make_member()
        make_membership(user, monthly_plan)
        with pytest.raises(InvalidAmountError):
            payment_service.record_live_payment(user.id, amount)
        assert db.session.query(MembershipPayment).count() == 0

    def test_member_payments_summary(self, db_session, monthly_plan):
        user = make_member()
        membership = make_membership(user, monthly_plan)
        make_live_payment(membership, 30000)
        make_live_payment(membership, 20000, mode="UPI")

        summary = payment_service.get_member_payments(user.id)

        current = summary["current_membership"]
        assert current["id"] == membership.id
        assert current["paid_cents"] == 50000
        assert current["remaining_cents"] == 50000
        assert len(current["payments"]) == 2
        assert summary["history"] == []

    def test_payment_creates_in_app_notification(self, db_session, monthly_plan):
        user = make_member()
        make_membership(user, monthly_plan)

        payment_service.record_live_payment(user.id, 30000, "upi")

        note = db.session.query(Notification).filter_by(user_id=user.id).one()
        assert note.type == notification_service.TYPE_PAYMENT
        assert note.message == "We received 300.00 by UPI."
