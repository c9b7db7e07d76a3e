from __future__ import annotations

import logging
import random
import re
from datetime import date, datetime, time
from typing import Callable, NamedTuple, Protocol

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..app import db
from ..constants import DEFAULT_ID_PREFIX
from ..errors import CertificateIdExhausted
from ..models import CertificateIdLog, Participant

logger = logging.getLogger("certbatch.ids")

CERTIFICATE_ID_PATTERN = re.compile(r"^[A-Z]{2,10}-\d{8}-[A-Z]{3}-\d{5}$")
PREFIX_PATTERN = re.compile(r"^[A-Z]{2,10}$")
MONTH_ABBREVIATIONS = (
    "JAN",
    "FEB",
    "MAR",
    "APR",
    "MAY",
    "JUN",
    "JUL",
    "AUG",
    "SEP",
    "OCT",
    "NOV",
    "DEC",
)
MAX_ATTEMPTS = 100
RANDOM_SPACE = 100000
IMPORTED_PREFIX = "IMPORTED"


class IdStats(NamedTuple):
    total: int
    by_prefix: dict[str, int]


class IdStore(Protocol):
    def exists(self, certificate_id: str) -> bool: ...

    def record(self, certificate_id: str, batch_id: int | None, prefix: str) -> bool: ...

    def stats(self, start: date | None = None, end: date | None = None) -> IdStats: ...


class MemoryIdStore:
    """Process-local uniqueness set, for runs without a database ledger."""

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}

    def exists(self, certificate_id: str) -> bool:
        return certificate_id in self._ids

    def record(self, certificate_id: str, batch_id: int | None, prefix: str) -> bool:
        if certificate_id in self._ids:
            return False
        self._ids[certificate_id] = prefix
        return True

    def stats(self, start: date | None = None, end: date | None = None) -> IdStats:
        by_prefix: dict[str, int] = {}
        for prefix in self._ids.values():
            by_prefix[prefix] = by_prefix.get(prefix, 0) + 1
        return IdStats(len(self._ids), by_prefix)

    def __len__(self) -> int:
        return len(self._ids)


class LedgerIdStore:
    """Uniqueness backed by the certificate_id_logs table.

    The unique constraint on certificate_id is what makes ``record`` safe when
    several batches draw IDs at once; losing the insert race is a collision.
    IDs already held by a participant count as taken even when they never
    went through the ledger.

    With ``commit=False`` entries are only flushed inside a savepoint, so a
    caller building a batch can commit or roll back the IDs together with it.
    """

    def __init__(self, commit: bool = True) -> None:
        self.commit = commit

    def exists(self, certificate_id: str) -> bool:
        try:
            logged = (
                db.session.query(CertificateIdLog.id)
                .filter(CertificateIdLog.certificate_id == certificate_id)
                .first()
            )
            held = logged or (
                db.session.query(Participant.id)
                .filter(Participant.certificate_id == certificate_id)
                .first()
            )
        except SQLAlchemyError:
            if self.commit:
                db.session.rollback()
            raise
        return held is not None

    def record(self, certificate_id: str, batch_id: int | None, prefix: str) -> bool:
        entry = CertificateIdLog(
            certificate_id=certificate_id, batch_id=batch_id, event_prefix=prefix
        )
        try:
            with db.session.begin_nested():
                db.session.add(entry)
            if self.commit:
                db.session.commit()
        except IntegrityError:
            logger.info("[CERT-ID] ledger collision id=%s", certificate_id)
            return False
        except SQLAlchemyError:
            if self.commit:
                db.session.rollback()
            raise
        return True

    def stats(self, start: date | None = None, end: date | None = None) -> IdStats:
        q = db.session.query(CertificateIdLog.event_prefix, func.count(CertificateIdLog.id))
        if start:
            q = q.filter(CertificateIdLog.generated_at >= datetime.combine(start, time.min))
        if end:
            q = q.filter(CertificateIdLog.generated_at <= datetime.combine(end, time.max))
        by_prefix = {prefix: int(count) for prefix, count in q.group_by(CertificateIdLog.event_prefix).all()}
        return IdStats(sum(by_prefix.values()), by_prefix)


class FallbackIdStore:
    """Use ``primary`` while it works; degrade to ``fallback`` when it errors."""

    def __init__(self, primary: IdStore, fallback: IdStore) -> None:
        self.primary = primary
        self.fallback = fallback

    def exists(self, certificate_id: str) -> bool:
        try:
            return self.primary.exists(certificate_id)
        except SQLAlchemyError as exc:
            logger.warning("[CERT-ID] ledger check failed, using in-memory set: %s", exc)
            return self.fallback.exists(certificate_id)

    def record(self, certificate_id: str, batch_id: int | None, prefix: str) -> bool:
        try:
            return self.primary.record(certificate_id, batch_id, prefix)
        except SQLAlchemyError as exc:
            logger.warning("[CERT-ID] ledger write failed, using in-memory set: %s", exc)
            return self.fallback.record(certificate_id, batch_id, prefix)

    def stats(self, start: date | None = None, end: date | None = None) -> IdStats:
        try:
            return self.primary.stats(start, end)
        except SQLAlchemyError as exc:
            logger.warning("[CERT-ID] ledger stats failed: %s", exc)
            return self.fallback.stats(start, end)


class ParsedCertificateId(NamedTuple):
    prefix: str
    generated_on: date
    month_abbr: str
    random_part: str


class BulkIdResult(NamedTuple):
    ids: list[str]
    errors: list[dict]


def normalize_prefix(prefix: str | None) -> str:
    value = (prefix or DEFAULT_ID_PREFIX).strip().upper()
    if not PREFIX_PATTERN.fullmatch(value):
        raise ValueError(f"Certificate ID prefix must be 2-10 letters: {prefix!r}")
    return value


def format_certificate_id(prefix: str, on: date, number: int) -> str:
    return (
        f"{prefix}-{on.strftime('%Y%m%d')}-{MONTH_ABBREVIATIONS[on.month - 1]}-"
        f"{number % RANDOM_SPACE:05d}"
    )


def validate_certificate_id(certificate_id: str | None) -> bool:
    return bool(certificate_id) and CERTIFICATE_ID_PATTERN.fullmatch(certificate_id) is not None


def parse_certificate_id(certificate_id: str) -> ParsedCertificateId:
    if not validate_certificate_id(certificate_id):
        raise ValueError(f"Invalid certificate ID format: {certificate_id!r}")
    prefix, date_part, month_abbr, random_part = certificate_id.split("-")
    try:
        generated_on = datetime.strptime(date_part, "%Y%m%d").date()
    except ValueError as exc:
        raise ValueError(f"Invalid certificate ID date: {certificate_id!r}") from exc
    return ParsedCertificateId(prefix, generated_on, month_abbr, random_part)


class CertificateIdGenerator:
    def __init__(
        self,
        store: IdStore,
        prefix: str = DEFAULT_ID_PREFIX,
        max_attempts: int = MAX_ATTEMPTS,
        clock: Callable[[], date] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.prefix = normalize_prefix(prefix)
        self.max_attempts = max_attempts
        self.clock = clock or date.today
        self.rng = rng or random.SystemRandom()

    def candidate(self, prefix: str | None = None) -> str:
        return format_certificate_id(
            normalize_prefix(prefix or self.prefix),
            self.clock(),
            self.rng.randrange(RANDOM_SPACE),
        )

    def generate(self, batch_id: int | None = None, prefix: str | None = None) -> str:
        """Issue a certificate ID that is new to the store and record it."""
        effective_prefix = normalize_prefix(prefix or self.prefix)
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.candidate(effective_prefix)
            if self.store.exists(candidate):
                continue
            if self.store.record(candidate, batch_id, effective_prefix):
                if attempt > 1:
                    logger.info("[CERT-ID] issued id=%s after %d attempts", candidate, attempt)
                return candidate
        raise CertificateIdExhausted(
            f"Failed to generate unique ID after {self.max_attempts} attempts"
        )

    def reserve(self, certificate_id: str, batch_id: int | None = None) -> bool:
        """Record an externally supplied ID so generated IDs never reuse it.

        Returns False when the ID was already taken.
        """
        try:
            prefix = parse_certificate_id(certificate_id).prefix
        except ValueError:
            prefix = IMPORTED_PREFIX
        if self.store.exists(certificate_id):
            return False
        return self.store.record(certificate_id, batch_id, prefix)

    def bulk_generate(
        self, count: int, batch_id: int | None = None, prefix: str | None = None
    ) -> BulkIdResult:
        ids: list[str] = []
        errors: list[dict] = []
        for index in range(count):
            try:
                ids.append(self.generate(batch_id=batch_id, prefix=prefix))
            except CertificateIdExhausted as exc:
                errors.append({"index": index, "error": str(exc)})
        return BulkIdResult(ids, errors)

    def stats(self, start: date | None = None, end: date | None = None) -> IdStats:
        return self.store.stats(start, end)


def default_id_generator(prefix: str | None = None, commit: bool = True) -> CertificateIdGenerator:
    from flask import current_app

    return CertificateIdGenerator(
        FallbackIdStore(LedgerIdStore(commit=commit), _process_fallback_store(current_app)),
        prefix=prefix or current_app.config.get("CERT_ID_PREFIX", DEFAULT_ID_PREFIX),
    )


def _process_fallback_store(app) -> MemoryIdStore:
    store = app.extensions.get("certbatch_ids")
    if store is None:
        store = MemoryIdStore()
        app.extensions["certbatch_ids"] = store
    return store
