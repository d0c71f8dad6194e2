"""
Bulk member import tests.
"""

import io
from datetime import date, datetime

import pytest

from fitsense.extensions import db
from fitsense.models import MemberRecord
from fitsense.services import import_service
from fitsense.validation import ValidationError

from conftest import make_member, make_record


def _by_email(email):
    return db.session.query(MemberRecord).filter_by(email=email).first()


class TestImport:
    def test_row_without_name_is_skipped_alone(self, db_session):
        rows = [
            {"name": "Asha", "email": "asha@example.com", "paid": "500"},
            {"name": "", "email": "ghost@example.com", "paid": "300"},
            {"name": "Ravi", "phone": "9000000001"},
        ]

        report = import_service.import_member_rows(rows)

        assert report.imported == 2
        assert report.skipped == 1
        assert report.total == 3
        assert report.errors == ["Row 2: name is required"]
        assert db_session.query(MemberRecord).count() == 2
        assert _by_email("ghost@example.com") is None

    def test_header_aliases_and_money(self, db_session):
        rows = [{
            "Full Name": " Meera ",
            "Email Address": "MEERA@example.com",
            "Mobile": "98 1111 1111",
            "Plan": "Quarterly",
            "Plan Total Amount": "2,700.00",
            "Paid Amount": "1,000.50",
            "Payment Mode": "upi",
            "Start Date": "2026-01-01",
            "End Date": "2026-04-01",
            "Shoe Size": "9",
        }]

        report = import_service.import_member_rows(rows, recorded_by="Front Desk")

        assert report.imported == 1
        record = _by_email("meera@example.com")
        assert record.name == "Meera"
        assert record.phone == "9811111111"
        assert record.plan_name == "Quarterly"
        assert record.plan_total_cents == 270000
        assert record.paid_cents == 100050
        assert record.membership_start_date == date(2026, 1, 1)
        assert record.membership_end_date == date(2026, 4, 1)
        entry = record.payment_installments[0]
        assert entry["source"] == "import"
        assert entry["payment_mode"] == "UPI"
        assert entry["recorded_by"] == "Front Desk"

    def test_existing_record_gets_only_the_difference(self, db_session):
        record = make_record(name="Asha", email="asha@example.com", plan_total_cents=100000, amounts=(30000,))

        report = import_service.import_member_rows([
            {"name": "Asha R", "email": "asha@example.com", "paid": "500", "total": "1000"},
        ])

        assert report.imported == 1
        db_session.refresh(record)
        assert record.name == "Asha R"
        assert record.paid_cents == 50000
        assert [e["amount_cents"] for e in record.payment_installments] == [30000, 20000]
        assert db_session.query(MemberRecord).count() == 1

    def test_reimport_is_a_no_op_for_money(self, db_session):
        rows = [{"name": "Asha", "email": "asha@example.com", "paid": "500"}]
        import_service.import_member_rows(rows)
        import_service.import_member_rows(rows)

        record = _by_email("asha@example.com")
        assert record.paid_cents == 50000
        assert len(record.payment_installments) == 1

    def test_lower_paid_never_removes_entries(self, db_session):
        record = make_record(name="Asha", email="asha@example.com", amounts=(80000,))
        import_service.import_member_rows([{"name": "Asha", "email": "asha@example.com", "paid": "100"}])
        db_session.refresh(record)
        assert record.paid_cents == 80000

    def test_matches_on_phone_when_email_missing(self, db_session):
        record = make_record(name="Ravi", phone="9000000001")
        import_service.import_member_rows([{"name": "Ravi", "phone": "9000000001", "email": "ravi@example.com"}])
        db_session.refresh(record)
        assert record.email == "ravi@example.com"
        assert db_session.query(MemberRecord).count() == 1

    def test_invalid_dates_are_ignored(self, db_session):
        report = import_service.import_member_rows([
            {"name": "Asha", "email": "asha@example.com", "start": "31/12/2025", "end": "soon"},
        ])
        assert report.imported == 1
        record = _by_email("asha@example.com")
        assert record.membership_start_date is None
        assert record.membership_end_date is None

    def test_bad_money_skips_row(self, db_session):
        report = import_service.import_member_rows([
            {"name": "Asha", "email": "asha@example.com", "paid": "lots"},
            {"name": "Ravi", "email": "ravi@example.com", "paid": "10.005"},
            {"name": "Meera", "email": "meera@example.com", "paid": "10"},
        ])
        assert report.imported == 1
        assert report.skipped == 2
        assert _by_email("asha@example.com") is None
        assert _by_email("meera@example.com").paid_cents == 1000

    def test_errors_are_capped(self, db_session):
        rows = [{"email": f"x{i}@example.com"} for i in range(8)]
        report = import_service.import_member_rows(rows, error_limit=3)
        assert report.skipped == 8
        assert len(report.errors) == 3

    def test_non_dict_rows_are_skipped(self, db_session):
        report = import_service.import_member_rows(["not a row", None])
        assert report.skipped == 2
        assert report.imported == 0

    def test_links_matching_account(self, db_session):
        user = make_member(email="asha@example.com")
        import_service.import_member_rows([{"name": "Asha", "email": "asha@example.com"}])
        record = _by_email("asha@example.com")
        assert record.user_id == user.id
        assert record.is_signed_up is True


class TestCsv:
    def test_rows_from_csv_strips_bom(self):
        text = "\ufeffName,Email,Paid\nAsha,asha@example.com,500\nRavi,,\n"
        rows = import_service.rows_from_csv(text)
        assert rows == [
            {"Name": "Asha", "Email": "asha@example.com", "Paid": "500"},
            {"Name": "Ravi", "Email": "", "Paid": ""},
        ]

    def test_csv_import_end_to_end(self, db_session):
        text = "name,email,plan total,paid\nAsha,asha@example.com,1000,250\n"
        report = import_service.import_member_rows(import_service.rows_from_csv(text))
        assert report.imported == 1
        record = _by_email("asha@example.com")
        assert record.plan_total_cents == 100000
        assert record.paid_cents == 25000


class TestXlsx:
    def _workbook(self, rows):
        from openpyxl import Workbook
        wb = Workbook()
        sheet = wb.active
        for row in rows:
            sheet.append(row)
        buf = io.BytesIO()
        wb.save(buf)
        buf.seek(0)
        return buf

    def test_rows_from_xlsx(self):
        stream = self._workbook([
            ["Name", "Email", "Paid", "Start Date"],
            ["Asha", "asha@example.com", 500, datetime(2026, 1, 5)],
            [None, None, None, None],
            ["Ravi", None, 250.5, None],
        ])
        rows = import_service.rows_from_xlsx(stream)
        assert rows == [
            {"Name": "Asha", "Email": "asha@example.com", "Paid": 500, "Start Date": "2026-01-05"},
            {"Name": "Ravi", "Email": None, "Paid": 250.5, "Start Date": None},
        ]

    def test_xlsx_import(self, db_session):
        stream = self._workbook([
            ["Name", "Mobile", "Plan Total", "Paid"],
            ["Ravi", 9000000001, 1000, 250.5],
        ])
        report = import_service.import_member_rows(import_service.rows_from_upload("members.xlsx", stream))
        assert report.imported == 1
        record = db_session.query(MemberRecord).one()
        assert record.phone == "9000000001"
        assert record.plan_total_cents == 100000
        assert record.paid_cents == 25050

    def test_unsupported_extension(self):
        with pytest.raises(ValidationError):
            import_service.rows_from_upload("members.pdf", io.BytesIO(b""))
