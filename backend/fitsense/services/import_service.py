# Overview: Bulk member import: normalize spreadsheet rows and upsert them into the registry one row at a time.

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from flask import current_app

from ..extensions import db
from ..models import MemberRecord
from ..validation import (
    ValidationError,
    normalize_email,
    normalize_phone,
    parse_money_to_cents,
)
from fitsense.time_utils import utcnow, parse_iso_date
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import ENTRY_SOURCE_IMPORT, build_entry, new_entry_id, replace_entries
from .payment_service import normalize_payment_mode
from .registry_service import find_unlinked_account


# Normalized header -> row field. Headers are lower-cased with spaces and
# underscores removed before lookup.
HEADER_ALIASES = {
    "name": "name",
    "fullname": "name",
    "membername": "name",
    "email": "email",
    "emailaddress": "email",
    "phone": "phone",
    "mobile": "phone",
    "phonenumber": "phone",
    "plan": "plan_name",
    "planname": "plan_name",
    "total": "plan_total",
    "amount": "plan_total",
    "plantotal": "plan_total",
    "plantotalamount": "plan_total",
    "paid": "paid",
    "paidamount": "paid",
    "start": "membership_start_date",
    "startdate": "membership_start_date",
    "membershipstartdate": "membership_start_date",
    "end": "membership_end_date",
    "enddate": "membership_end_date",
    "membershipenddate": "membership_end_date",
    "note": "notes",
    "notes": "notes",
    "mode": "payment_mode",
    "paymentmode": "payment_mode",
}


@dataclass
class ImportReport:
    error_limit: int = 5
    imported: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.error_limit:
            self.errors.append(message)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "total": self.total,
            "errors": list(self.errors),
        }


def _header_key(raw: Any) -> str:
    return "".join(str(raw).split()).lower().replace("_", "").replace("-", "")


def normalize_row(raw: dict) -> dict:
    """Map a raw row onto known fields; unknown columns are dropped."""
    row: dict[str, Any] = {}
    if not isinstance(raw, dict):
        return row
    for key, value in raw.items():
        if key is None:
            continue
        target = HEADER_ALIASES.get(_header_key(key))
        if target is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        if target not in row or row[target] in (None, ""):
            row[target] = value
    return row


def _soft_date(value):
    """Unparseable dates are dropped, not fatal."""
    if value in (None, ""):
        return None
    try:
        return parse_iso_date(str(value))
    except ValueError:
        return None


def _text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _find_existing(email: str | None, phone: str | None) -> MemberRecord | None:
    if email:
        record = lock_for_update(db.session.query(MemberRecord).filter(MemberRecord.email == email)).first()
        if record is not None:
            return record
    if phone:
        return lock_for_update(db.session.query(MemberRecord).filter(MemberRecord.phone == phone)).first()
    return None


def _import_row(row: dict, recorded_by: str | None) -> None:
    name = _text(row.get("name"))
    email = normalize_email(row.get("email"))
    phone = normalize_phone(row.get("phone"))
    plan_name = _text(row.get("plan_name"))
    plan_total = parse_money_to_cents(row.get("plan_total"), "plan_total")
    paid = parse_money_to_cents(row.get("paid"), "paid")
    mode = normalize_payment_mode(row.get("payment_mode"))
    start = _soft_date(row.get("membership_start_date"))
    end = _soft_date(row.get("membership_end_date"))
    notes = _text(row.get("notes"))
    has_total = _text(row.get("plan_total")) is not None

    def _entry(amount: int, existing: list[dict]) -> dict:
        return build_entry(
            entry_id=new_entry_id(e.get("id") for e in existing),
            amount_cents=amount,
            payment_mode=mode,
            notes="Imported",
            paid_at=utcnow(),
            recorded_by=recorded_by,
            source=ENTRY_SOURCE_IMPORT,
        )

    def _op():
        record = _find_existing(email, phone)

        if record is None:
            record = MemberRecord(
                name=name,
                email=email,
                phone=phone,
                plan_name=plan_name,
                plan_total_cents=plan_total,
                membership_start_date=start,
                membership_end_date=end,
                notes=notes,
                is_signed_up=False,
            )
            replace_entries(record, [_entry(paid, [])] if paid > 0 else [])
            account = find_unlinked_account(email, phone)
            if account is not None:
                record.user_id = account.id
                record.is_signed_up = True
            db.session.add(record)
        else:
            if record.name != name:
                record.name = name
            if email and record.email is None:
                record.email = email
            if phone and record.phone is None:
                taken = db.session.query(MemberRecord.id).filter(MemberRecord.phone == phone).first()
                if taken is None:
                    record.phone = phone
            if plan_name and record.plan_name != plan_name:
                record.plan_name = plan_name
            if has_total and record.plan_total_cents != plan_total:
                record.plan_total_cents = plan_total
            if start and record.membership_start_date != start:
                record.membership_start_date = start
            if end and record.membership_end_date != end:
                record.membership_end_date = end
            if notes and record.notes != notes:
                record.notes = notes
            # Only money above what the ledger already holds is appended
            delta = paid - (record.paid_cents or 0)
            if delta > 0:
                existing = list(record.payment_installments or [])
                replace_entries(record, existing + [_entry(delta, existing)])

        db.session.commit()

    run_with_retry(_op)


def import_member_rows(rows: Iterable[dict], *, recorded_by: str | None = None, error_limit: int | None = None) -> ImportReport:
    """
    Upsert registry records from spreadsheet rows, matching on email then phone.

    Each row is committed on its own. A row without a name, or one that fails
    validation or the write, is skipped and rolled back alone.
    """
    if error_limit is None:
        error_limit = current_app.config.get("IMPORT_ERROR_LIMIT", 5)
    report = ImportReport(error_limit=error_limit)

    for index, raw in enumerate(rows, start=1):
        report.total += 1
        row = normalize_row(raw)
        if not _text(row.get("name")):
            report.skipped += 1
            report.add_error(f"Row {index}: name is required")
            continue
        try:
            _import_row(row, recorded_by)
        except Exception as exc:
            db.session.rollback()
            report.skipped += 1
            report.add_error(f"Row {index}: {exc}")
            continue
        report.imported += 1

    current_app.logger.info(
        "Member import: %s imported, %s skipped of %s rows", report.imported, report.skipped, report.total,
    )
    return report


def rows_from_csv(text: str) -> list[dict]:
    """Parse CSV text (first line is the header) into row dicts."""
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.DictReader(io.StringIO(text))
    return [dict(row) for row in reader]


def rows_from_xlsx(stream) -> list[dict]:
    """Read the active sheet of an Excel workbook; the first row is the header."""
    from openpyxl import load_workbook

    wb = load_workbook(stream, data_only=True)
    data = list(wb.active.values)
    if not data:
        return []

    headers = [str(h).strip() if h is not None else "" for h in data[0]]
    rows = []
    for values in data[1:]:
        if values is None or all(v is None for v in values):
            continue
        row = {}
        for header, value in zip(headers, values):
            if not header:
                continue
            if isinstance(value, (datetime, date)):
                value = value.date().isoformat() if isinstance(value, datetime) else value.isoformat()
            row[header] = value
        rows.append(row)
    return rows


def rows_from_upload(filename: str, stream) -> list[dict]:
    """Rows from an uploaded .csv or Excel file, chosen by extension."""
    ext = (filename or "").rsplit(".", 1)[-1].lower()
    if ext == "csv":
        return rows_from_csv(stream.read().decode("utf-8"))
    if ext in {"xlsx", "xlsm", "xltx", "xltm"}:
        return rows_from_xlsx(stream)
    raise ValidationError("Unsupported file format (use .csv or .xlsx)")
