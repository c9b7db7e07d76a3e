from __future__ import annotations

import csv
import io
import os
import re
from typing import Iterable, NamedTuple

from flask import current_app
from openpyxl import Workbook, load_workbook

from ..app import db
from ..constants import (
    BATCH_PENDING,
    CERTIFICATE_ID_MAX,
    DEFAULT_CATEGORY,
    EVENT_CATEGORIES,
    PARTICIPANT_EMAIL_MAX,
    PARTICIPANT_NAME_MAX,
)
from ..errors import (
    CertificateIdExhausted,
    ParticipantValidationError,
    RowError,
    RowValidationFailure,
    TemplateSourceError,
)
from ..models import Batch, Participant, Template
from ..shared.cert_ids import CertificateIdGenerator, default_id_generator

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EXPORT_COLUMNS = ["Sr_no", "Name", "Email", "Certificate_ID"]

# normalized header -> canonical column
_HEADERS = {
    "srno": "Sr_no",
    "sno": "Sr_no",
    "name": "Name",
    "email": "Email",
    "certificateid": "Certificate_ID",
    "category": "Category",
}


class ParticipantRow(NamedTuple):
    sr_no: int | None
    name: str
    email: str
    certificate_id: str | None
    category: str


class ValidatedSheet(NamedTuple):
    rows: list[ParticipantRow]
    failures: list[RowValidationFailure]
    total_rows: int


class ImportResult(NamedTuple):
    batch: Batch
    participants: list[Participant]
    failures: list[RowValidationFailure]
    total_rows: int


def _canonical(header) -> str | None:
    key = str(header or "").replace(" ", "").replace("_", "").lower()
    return _HEADERS.get(key)


def _canonical_row(raw: dict) -> dict:
    row = {}
    for header, value in raw.items():
        column = _canonical(header)
        if column and column not in row:
            row[column] = value
    return row


def _read_csv(data: bytes) -> list[dict]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParticipantValidationError(f"CSV file is not UTF-8: {exc}") from exc
    reader = csv.DictReader(io.StringIO(text))
    return [_canonical_row(raw) for raw in reader]


def _read_excel(data: bytes) -> list[dict]:
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise ParticipantValidationError(f"Failed to parse Excel file: {exc}") from exc
    try:
        rows = wb.worksheets[0].iter_rows(values_only=True)
        headers = next(rows, None)
        if not headers:
            return []
        records = []
        for values in rows:
            if values is None or all(v is None or str(v).strip() == "" for v in values):
                continue
            records.append(_canonical_row(dict(zip(headers, values))))
        return records
    finally:
        wb.close()


def read_participant_rows(filename: str, data: bytes) -> list[dict]:
    """Parse an uploaded CSV or Excel sheet into rows keyed by canonical column."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext == ".csv":
        rows = _read_csv(data)
    elif ext in (".xlsx", ".xlsm"):
        rows = _read_excel(data)
    else:
        raise ParticipantValidationError(
            "Unsupported file type. Only CSV and Excel files are supported."
        )
    if not rows:
        raise ParticipantValidationError("File contains no data or is empty")
    return rows


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _parse_sr_no(value) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        number = float(_text(value))
    if not number.is_integer() or number < 0:
        raise ValueError(value)
    return int(number)


def normalize_category(value) -> str:
    text = _text(value)
    for category in EVENT_CATEGORIES:
        if text.lower() == category.lower():
            return category
    return current_app.config.get("CERT_DEFAULT_CATEGORY", DEFAULT_CATEGORY)


def validate_row(raw: dict) -> tuple[ParticipantRow | None, list[RowError]]:
    errors: list[RowError] = []

    sr_no = None
    raw_sr = raw.get("Sr_no")
    if _text(raw_sr):
        try:
            sr_no = _parse_sr_no(raw_sr)
        except ValueError:
            errors.append(
                RowError(
                    "Sr_no",
                    raw_sr,
                    "Must be a positive number",
                    "Invalid Sr_no: must be a positive number",
                )
            )

    name = _text(raw.get("Name"))
    if not name:
        errors.append(
            RowError(
                "Name",
                raw.get("Name"),
                "Required non-empty string",
                "Name is required and must be a non-empty string",
            )
        )
    elif len(name) > PARTICIPANT_NAME_MAX:
        errors.append(
            RowError(
                "Name",
                name,
                f"Maximum {PARTICIPANT_NAME_MAX} characters",
                f"Name must not exceed {PARTICIPANT_NAME_MAX} characters",
            )
        )

    email = _text(raw.get("Email")).lower()
    if not email:
        errors.append(
            RowError("Email", raw.get("Email"), "Required string", "Email is required")
        )
    elif not EMAIL_RE.match(email):
        errors.append(
            RowError("Email", email, "Valid email format", "Invalid email format")
        )
    elif len(email) > PARTICIPANT_EMAIL_MAX:
        errors.append(
            RowError(
                "Email",
                email,
                f"Maximum {PARTICIPANT_EMAIL_MAX} characters",
                f"Email must not exceed {PARTICIPANT_EMAIL_MAX} characters",
            )
        )

    certificate_id = _text(raw.get("Certificate_ID")) or None
    if certificate_id and len(certificate_id) > CERTIFICATE_ID_MAX:
        errors.append(
            RowError(
                "Certificate_ID",
                certificate_id,
                f"Maximum {CERTIFICATE_ID_MAX} characters",
                f"Certificate ID must not exceed {CERTIFICATE_ID_MAX} characters",
            )
        )

    if errors:
        return None, errors
    return (
        ParticipantRow(sr_no, name, email, certificate_id, normalize_category(raw.get("Category"))),
        [],
    )


def _taken_certificate_ids(candidates: Iterable[str]) -> set[str]:
    ids = [c for c in candidates if c]
    if not ids:
        return set()
    rows = (
        db.session.query(Participant.certificate_id)
        .filter(Participant.certificate_id.in_(ids))
        .all()
    )
    return {row[0] for row in rows}


def validate_participant_rows(rows: list[dict]) -> ValidatedSheet:
    """Validate every row; a row with any field error is reported, not kept.

    Provided certificate IDs must be unique within the sheet and against
    participants already on record.
    """
    if not rows:
        raise ParticipantValidationError("No valid data found in file")

    valid: list[tuple[int, dict, ParticipantRow]] = []
    failures: list[RowValidationFailure] = []
    for index, raw in enumerate(rows, start=1):
        row, errors = validate_row(raw)
        if errors:
            failures.append(RowValidationFailure(index, raw, tuple(errors)))
        else:
            valid.append((index, raw, row))

    taken = _taken_certificate_ids(row.certificate_id for _, _, row in valid)
    seen: set[str] = set()
    kept: list[ParticipantRow] = []
    for index, raw, row in valid:
        cid = row.certificate_id
        if cid and (cid in taken or cid in seen):
            failures.append(
                RowValidationFailure(
                    index,
                    raw,
                    (
                        RowError(
                            "Certificate_ID",
                            cid,
                            "Unique",
                            "Certificate ID is already in use",
                        ),
                    ),
                )
            )
            continue
        if cid:
            seen.add(cid)
        kept.append(row)

    failures.sort(key=lambda f: f.row)
    # Sr_no defaults to the position among accepted rows
    kept = [
        row if row.sr_no is not None else row._replace(sr_no=position)
        for position, row in enumerate(kept, start=1)
    ]
    return ValidatedSheet(kept, failures, len(rows))


def _batch_categories(rows: list[ParticipantRow], categories: Iterable[str] | None) -> list[str]:
    chosen = [normalize_category(c) for c in (categories or []) if _text(c)]
    if not chosen:
        chosen = [row.category for row in rows]
    ordered: list[str] = []
    for category in chosen:
        if category not in ordered:
            ordered.append(category)
    return ordered or [current_app.config.get("CERT_DEFAULT_CATEGORY", DEFAULT_CATEGORY)]


def create_batch_from_rows(
    sheet: ValidatedSheet,
    batch_name: str,
    template_id: int,
    categories: Iterable[str] | None = None,
    id_generator: CertificateIdGenerator | None = None,
) -> ImportResult:
    """Create a pending batch holding every accepted row.

    Supplied certificate IDs are reserved in the ledger before any ID is
    issued, so a generated ID never repeats one from the sheet. Rows without
    an ID get one issued through the ledger; a row whose ID cannot be issued
    is reported as a failure instead of aborting the import.

    The batch, its ledger entries and its participants are committed
    together. Any other error rolls all of them back.
    """
    template = db.session.get(Template, template_id)
    if template is None or not template.is_active:
        raise TemplateSourceError(f"Template {template_id} not found or inactive")
    if not sheet.rows:
        raise ParticipantValidationError(
            "No valid participants found in file", sheet.failures
        )

    generator = id_generator or default_id_generator(commit=False)
    failures = list(sheet.failures)
    pending: list[Participant] = []
    try:
        batch = Batch(
            name=batch_name,
            event_categories=_batch_categories(sheet.rows, categories),
            template_id=template.id,
            status=BATCH_PENDING,
            total_participants=0,
        )
        db.session.add(batch)
        db.session.flush()

        for row in sheet.rows:
            # already in the ledger when issued earlier through gen_ids
            if row.certificate_id:
                generator.reserve(row.certificate_id, batch_id=batch.id)

        for position, row in enumerate(sheet.rows, start=1):
            certificate_id = row.certificate_id
            if not certificate_id:
                try:
                    certificate_id = generator.generate(batch_id=batch.id)
                except CertificateIdExhausted as exc:
                    current_app.logger.warning(
                        f"[CERT-IMPORT] id exhausted batch={batch.id} row={position}"
                    )
                    failures.append(
                        RowValidationFailure(
                            position,
                            row._asdict(),
                            (RowError("Certificate_ID", None, "Unique ID generation", str(exc)),),
                        )
                    )
                    continue
            pending.append(
                Participant(
                    sr_no=row.sr_no,
                    name=row.name,
                    email=row.email,
                    certificate_id=certificate_id,
                    batch_id=batch.id,
                )
            )

        db.session.add_all(pending)
        batch.total_participants = len(pending)
        db.session.commit()
    except Exception:
        current_app.logger.exception(f"[CERT-IMPORT] import failed name={batch_name!r}")
        db.session.rollback()
        raise
    current_app.logger.info(
        f"[CERT-IMPORT] batch={batch.id} name={batch_name!r} "
        f"participants={len(pending)} rejected={len(failures)}"
    )
    return ImportResult(batch, pending, failures, sheet.total_rows)


def import_participants(
    filename: str,
    data: bytes,
    batch_name: str,
    template_id: int,
    categories: Iterable[str] | None = None,
) -> ImportResult:
    sheet = validate_participant_rows(read_participant_rows(filename, data))
    return create_batch_from_rows(sheet, batch_name, template_id, categories)


def export_participants_csv(participants: Iterable[Participant]) -> str:
    sio = io.StringIO()
    writer = csv.writer(sio, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for p in participants:
        writer.writerow(["" if p.sr_no is None else p.sr_no, p.name or "", p.email or "", p.certificate_id or ""])
    return sio.getvalue()


def export_participants_xlsx(participants: Iterable[Participant]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Participants"
    ws.append(EXPORT_COLUMNS)
    for p in participants:
        ws.append(["" if p.sr_no is None else p.sr_no, p.name or "", p.email or "", p.certificate_id or ""])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
