"""
Member registry CRUD, listing and account-linking tests.
"""

from datetime import date, timedelta

import pytest

from fitsense.models import MemberRecord
from fitsense.services import registry_service
from fitsense.services.ledger_service import RecordNotFoundError
from fitsense.services.payment_service import InvalidAmountError
from fitsense.services.registry_service import DuplicateIdentityError, RecordLinkedError
from fitsense.validation import ValidationError

from conftest import make_member, make_record


TODAY = date(2026, 3, 15)


class TestCreate:
    def test_email_is_lower_cased_and_phone_trimmed(self, db_session):
        record = registry_service.create_record({
            "name": "Ravi Kumar",
            "email": "  Ravi@Example.COM ",
            "phone": " 98765 43210 ",
        })
        assert record.email == "ravi@example.com"
        assert record.phone == "9876543210"
        assert record.paid_cents == 0
        assert record.payment_installments == []
        assert record.is_signed_up is False

    def test_name_required(self, db_session):
        with pytest.raises(ValidationError):
            registry_service.create_record({"email": "x@example.com"})

    def test_ledger_fields_not_writable(self, db_session):
        with pytest.raises(ValidationError):
            registry_service.create_record({"name": "Cheat", "paid_cents": 500000})
        with pytest.raises(ValidationError):
            registry_service.create_record({"name": "Cheat", "payment_installments": []})

    def test_duplicate_email_rejected(self, db_session):
        registry_service.create_record({"name": "One", "email": "dup@example.com"})
        with pytest.raises(DuplicateIdentityError):
            registry_service.create_record({"name": "Two", "email": "DUP@example.com"})

    def test_duplicate_phone_rejected(self, db_session):
        registry_service.create_record({"name": "One", "phone": "9000000001"})
        with pytest.raises(DuplicateIdentityError):
            registry_service.create_record({"name": "Two", "phone": "9000000001"})

    def test_initial_payment_becomes_first_entry(self, db_session):
        record = registry_service.create_record(
            {"name": "Walk In", "plan_total_cents": 100000},
            initial_payment_cents=40000,
            payment_mode="upi",
            recorded_by="Front Desk",
        )
        assert record.paid_cents == 40000
        assert record.remaining_cents == 60000
        entry = record.payment_installments[0]
        assert entry["payment_mode"] == "UPI"
        assert entry["recorded_by"] == "Front Desk"
        assert entry["source"] == "manual"

    def test_bad_initial_payment_creates_nothing(self, db_session):
        with pytest.raises(InvalidAmountError):
            registry_service.create_record({"name": "Walk In"}, initial_payment_cents=-5)
        assert db_session.query(MemberRecord).count() == 0

    def test_end_before_start_rejected(self, db_session):
        with pytest.raises(ValidationError):
            registry_service.create_record({
                "name": "Walk In",
                "membership_start_date": "2026-03-10",
                "membership_end_date": "2026-03-01",
            })

    def test_links_to_matching_unlinked_account(self, db_session):
        user = make_member(email="asha@example.com")
        record = registry_service.create_record({"name": "Asha", "email": "Asha@example.com"})
        assert record.user_id == user.id
        assert record.is_signed_up is True


class TestUpdateDelete:
    def test_update_changes_only_given_fields(self, db_session):
        record = make_record(name="Old Name", email="old@example.com", amounts=(1000,))
        updated = registry_service.update_record(record.id, {"name": "New Name"})
        assert updated.name == "New Name"
        assert updated.email == "old@example.com"
        assert updated.paid_cents == 1000

    def test_update_with_same_values_keeps_version(self, db_session):
        record = make_record(name="Same", email="same@example.com")
        version = record.version_id
        registry_service.update_record(record.id, {"name": "Same", "email": "same@example.com"})
        db_session.refresh(record)
        assert record.version_id == version

    def test_update_to_taken_phone_rejected(self, db_session):
        make_record(name="A", phone="111")
        b = make_record(name="B", phone="222")
        with pytest.raises(DuplicateIdentityError):
            registry_service.update_record(b.id, {"phone": "111"})

    def test_update_unknown_record(self, db_session):
        with pytest.raises(RecordNotFoundError):
            registry_service.update_record(9999, {"name": "Ghost"})

    def test_update_cannot_touch_ledger(self, db_session):
        record = make_record(amounts=(1000,))
        with pytest.raises(ValidationError):
            registry_service.update_record(record.id, {"paid_cents": 0})

    def test_delete_walk_in(self, db_session):
        record = make_record()
        registry_service.delete_record(record.id)
        assert db_session.get(MemberRecord, record.id) is None

    def test_delete_linked_record_refused(self, db_session):
        user = make_member()
        record = make_record(email="linked@example.com", user_id=user.id)
        with pytest.raises(RecordLinkedError):
            registry_service.delete_record(record.id)
        assert db_session.get(MemberRecord, record.id) is not None


class TestListing:
    def _seed(self):
        expired = make_record(name="Expired", membership_end_date=TODAY - timedelta(days=1),
                              plan_total_cents=100000, amounts=(100000,))
        expiring = make_record(name="Expiring", membership_end_date=TODAY + timedelta(days=3),
                               plan_total_cents=100000, amounts=(50000,))
        active = make_record(name="Active", membership_end_date=TODAY + timedelta(days=30),
                             plan_total_cents=100000, amounts=(120000,))
        none = make_record(name="No Plan")
        return expired, expiring, active, none

    def test_ordering_expired_then_expiring_then_rest(self, db_session):
        expired, expiring, active, none = self._seed()
        result = registry_service.list_records(today=TODAY)
        ids = [item["id"] for item in result["items"]]
        assert ids[:2] == [expired.id, expiring.id]
        assert ids[2:] == [none.id, active.id]
        assert result["count"] == 4

    @pytest.mark.parametrize("filter_,expected", [
        ("pending-payment", {"Expiring"}),
        ("fully-paid", {"Expired", "Active"}),
        ("expired-subscription", {"Expired"}),
        ("expiring-soon", {"Expiring"}),
        ("active-subscription", {"Expiring", "Active"}),
        ("no-subscription", {"No Plan"}),
        ("not-signed-up", {"Expired", "Expiring", "Active", "No Plan"}),
        ("signed-up", set()),
    ])
    def test_filters(self, db_session, filter_, expected):
        self._seed()
        result = registry_service.list_records(filter_=filter_, today=TODAY)
        assert {item["name"] for item in result["items"]} == expected

    def test_search_matches_name_email_phone(self, db_session):
        make_record(name="Meera", email="meera@example.com", phone="9811111111")
        make_record(name="Other")
        assert registry_service.list_records("MEERA", today=TODAY)["count"] == 1
        assert registry_service.list_records("98111", today=TODAY)["count"] == 1

    def test_unknown_filter(self, db_session):
        with pytest.raises(ValidationError):
            registry_service.list_records(filter_="vip", today=TODAY)

    def test_pagination(self, db_session):
        for i in range(5):
            make_record(name=f"Member {i}")
        result = registry_service.list_records(today=TODAY, page=2, per_page=2)
        assert result["count"] == 2
        assert result["pagination"]["total"] == 5
        assert result["pagination"]["total_pages"] == 3
        assert result["pagination"]["has_next"] is True

    def test_stats_keep_overpaid_out_of_pending(self, db_session):
        self._seed()
        stats = registry_service.registry_stats(TODAY)
        assert stats["total_members"] == 4
        assert stats["expected_cents"] == 300000
        assert stats["collected_cents"] == 270000
        assert stats["pending_cents"] == 50000
        assert stats["pending_count"] == 1
        assert stats["overpaid_cents"] == 20000
        assert stats["overpaid_count"] == 1
        assert stats["expired_subscriptions"] == 1
        assert stats["expiring_subscriptions"] == 1
        assert stats["active_subscriptions"] == 1
        assert stats["no_subscription"] == 1


class TestAccountLinking:
    def test_claims_unlinked_record_by_email(self, db_session):
        record = make_record(name="Walk In", email="asha@example.com", amounts=(30000,))
        user = make_member(email="asha@example.com", phone="9000000009")

        linked = registry_service.link_account_to_registry(user)
        db_session.commit()

        assert linked.id == record.id
        assert linked.user_id == user.id
        assert linked.is_signed_up is True
        assert linked.phone == "9000000009"
        assert linked.paid_cents == 30000

    def test_creates_record_without_taken_phone(self, db_session):
        other = make_member(name="Someone Else", email="else@example.com")
        make_record(name="Someone Else", email="else@example.com", phone="9000000009",
                    user_id=other.id, is_signed_up=True)
        user = make_member(email="new@example.com", phone="9000000009")

        linked = registry_service.link_account_to_registry(user)
        db_session.commit()

        assert linked.user_id == user.id
        assert linked.email == "new@example.com"
        assert linked.phone is None

    def test_existing_link_is_returned(self, db_session):
        user = make_member()
        record = make_record(email="asha@example.com", user_id=user.id, is_signed_up=True)
        assert registry_service.link_account_to_registry(user).id == record.id
