"""Batch certificate generation.

Renders, stores and records one certificate per participant of a batch,
strictly in participant order. A participant that fails to render is
recorded and skipped; storage failures after a good render are reported
separately and leave ``cloud_url`` empty. Only batch-level failures (missing
batch, template or participants) are raised, always after the batch has been
moved to ``failed``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Protocol

from flask import current_app

from ..app import db
from ..constants import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_PROCESSING,
    DEFAULT_CATEGORY,
)
from ..errors import BatchGenerationError, StorageError, TemplateSourceError
from ..models import Batch, Participant, Template
from ..shared.certificates import RenderedCertificate, render_certificate_pdf
from ..shared.object_storage import CertificateStorage, storage_from_config
from ..shared.placement import PlacementSpec, parse_placement
from ..shared.storage import certificate_output_path, write_atomic
from ..shared.surfaces import TemplateSurface, surface_from_record

logger = logging.getLogger("certbatch.batches")

Renderer = Callable[[TemplateSurface, str, str, PlacementSpec], RenderedCertificate]


@dataclass(frozen=True)
class ProgressEvent:
    batch_id: int
    processed: int
    total: int
    succeeded: int
    failed: int
    current_participant: str
    error: str | None = None


class ProgressChannel:
    """Ordered, synchronous fan-out of progress events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Callable[[ProgressEvent], None]] = []

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "[CERT-BATCH] progress subscriber failed batch=%s", event.batch_id
                )


@dataclass(frozen=True)
class RenderResult:
    participant_id: int
    name: str
    certificate_id: str
    local_path: str
    storage_key: str | None
    cloud_url: str | None
    name_font_size: float


@dataclass
class BatchResult:
    batch_id: int
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    status: str | None = None
    certificates: list[RenderResult] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    storage_errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "successful": self.succeeded,
            "failed": self.failed,
            "status": self.status,
            "certificates": [vars(c) for c in self.certificates],
            "errors": list(self.errors),
            "storage_errors": list(self.storage_errors),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    batch_id: int
    status: str
    total: int
    generated: int
    percent: float
    participants: list[dict]


class BatchRepository(Protocol):
    def get_batch(self, batch_id: int) -> Batch | None: ...

    def participants(self, batch: Batch, pending_only: bool = False) -> list[Participant]: ...

    def set_status(self, batch: Batch, status: str) -> None: ...

    def mark_rendered(self, participant: Participant, local_path: str, cloud_url: str | None) -> None: ...

    def finish(self, batch: Batch, status: str, generated: int) -> None: ...

    def count_generated(self, batch: Batch) -> int: ...

    def discard_changes(self) -> None: ...

    def mark_failed(self, batch_id: int) -> None: ...


class SqlBatchRepository:
    def get_batch(self, batch_id: int) -> Batch | None:
        return db.session.get(Batch, batch_id)

    def participants(self, batch: Batch, pending_only: bool = False) -> list[Participant]:
        q = db.session.query(Participant).filter(Participant.batch_id == batch.id)
        if pending_only:
            q = q.filter(Participant.certificate_path.is_(None))
        return q.order_by(Participant.id).all()

    def set_status(self, batch: Batch, status: str) -> None:
        batch.status = status
        db.session.commit()

    def mark_rendered(self, participant: Participant, local_path: str, cloud_url: str | None) -> None:
        participant.certificate_path = local_path
        participant.cloud_url = cloud_url
        db.session.commit()

    def finish(self, batch: Batch, status: str, generated: int) -> None:
        batch.certificates_generated = generated
        batch.status = status
        db.session.commit()

    def count_generated(self, batch: Batch) -> int:
        return (
            db.session.query(Participant)
            .filter(
                Participant.batch_id == batch.id,
                Participant.certificate_path.isnot(None),
            )
            .count()
        )

    def discard_changes(self) -> None:
        db.session.rollback()

    def mark_failed(self, batch_id: int) -> None:
        db.session.rollback()
        batch = db.session.get(Batch, batch_id)
        if batch is not None:
            batch.status = BATCH_FAILED
            db.session.commit()


def load_template_surface(template: Template) -> TemplateSurface:
    path = template.file_path
    if not path or not os.path.isfile(path):
        raise TemplateSourceError(f"Template file not found: {path}")
    with open(path, "rb") as fh:
        data = fh.read()
    return surface_from_record(template.surface_kind, template.image_format, data)


class BatchGenerator:
    def __init__(
        self,
        repository: BatchRepository,
        storage: CertificateStorage | None,
        output_root: str,
        *,
        renderer: Renderer = render_certificate_pdf,
        surface_loader: Callable[[Template], TemplateSurface] = load_template_surface,
        channel: ProgressChannel | None = None,
        default_category: str = DEFAULT_CATEGORY,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.output_root = output_root
        self.renderer = renderer
        self.surface_loader = surface_loader
        self.channel = channel or ProgressChannel()
        self.default_category = default_category

    def generate(self, batch_id: int) -> BatchResult:
        return self._run(batch_id, regenerate=False)

    def regenerate_failed(self, batch_id: int) -> BatchResult:
        """Re-run generation for participants that still have no local render."""
        return self._run(batch_id, regenerate=True)

    def get_progress(self, batch_id: int) -> ProgressSnapshot:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchGenerationError(f"Batch with ID {batch_id} not found")
        participants = self.repository.participants(batch)
        total = len(participants)
        generated = sum(1 for p in participants if p.certificate_path)
        return ProgressSnapshot(
            batch_id=batch.id,
            status=batch.status,
            total=total,
            generated=generated,
            percent=(generated / total * 100.0) if total else 0.0,
            participants=[
                {
                    "id": p.id,
                    "name": p.name,
                    "certificate_id": p.certificate_id,
                    "has_local_certificate": bool(p.certificate_path),
                    "has_cloud_certificate": bool(p.cloud_url),
                    "certificate_path": p.certificate_path,
                    "cloud_url": p.cloud_url,
                }
                for p in participants
            ],
        )

    def _run(self, batch_id: int, regenerate: bool) -> BatchResult:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchGenerationError(f"Batch with ID {batch_id} not found")
        try:
            return self._run_batch(batch, regenerate)
        except Exception as exc:
            self._force_failed(batch_id)
            if isinstance(exc, BatchGenerationError):
                raise
            raise BatchGenerationError(
                f"Batch certificate generation failed: {exc}"
            ) from exc

    def _run_batch(self, batch: Batch, regenerate: bool) -> BatchResult:
        template = batch.template
        if template is None:
            raise BatchGenerationError(f"No template assigned to batch {batch.id}")
        participants = self.repository.participants(batch, pending_only=regenerate)
        result = BatchResult(batch_id=batch.id, total=len(participants))
        if not participants:
            if regenerate:
                result.status = batch.status
                logger.info("[CERT-BATCH] nothing to regenerate batch=%s", batch.id)
                return result
            raise BatchGenerationError(f"No participants found in batch {batch.id}")

        self.repository.set_status(batch, BATCH_PROCESSING)
        placement = parse_placement(template.placement_config)
        surface = self.surface_loader(template)
        category = batch.primary_category or self.default_category
        logger.info(
            "[CERT-BATCH] start batch=%s participants=%d regenerate=%s",
            batch.id,
            len(participants),
            regenerate,
        )

        for index, participant in enumerate(participants, start=1):
            error = self._process_participant(
                batch, participant, surface, placement, category, regenerate, result
            )
            self.channel.publish(
                ProgressEvent(
                    batch_id=batch.id,
                    processed=index,
                    total=result.total,
                    succeeded=result.succeeded,
                    failed=result.failed,
                    current_participant=participant.name,
                    error=error,
                )
            )

        generated = (
            self.repository.count_generated(batch) if regenerate else result.succeeded
        )
        result.status = BATCH_COMPLETED if generated > 0 else BATCH_FAILED
        self.repository.finish(batch, result.status, generated)
        logger.info(
            "[CERT-BATCH] done batch=%s status=%s succeeded=%d failed=%d storage_errors=%d",
            batch.id,
            result.status,
            result.succeeded,
            result.failed,
            len(result.storage_errors),
        )
        return result

    def _process_participant(
        self,
        batch: Batch,
        participant: Participant,
        surface: TemplateSurface,
        placement: PlacementSpec,
        category: str,
        regenerate: bool,
        result: BatchResult,
    ) -> str | None:
        try:
            rendered = self.renderer(
                surface, participant.name, participant.certificate_id, placement
            )
            local_path = certificate_output_path(
                self.output_root, batch.id, participant.certificate_id
            )
            write_atomic(local_path, rendered.pdf_bytes)
        except Exception as exc:
            logger.exception(
                "[CERT-FAIL] batch=%s participant=%s certificate=%s",
                batch.id,
                participant.id,
                participant.certificate_id,
            )
            return self._record_failure(
                participant.id, participant.name, participant.certificate_id, exc, result
            )

        storage_key = cloud_url = None
        if self.storage is not None:
            metadata = {
                "participantId": str(participant.id),
                "participantName": participant.name,
                "participantEmail": participant.email,
                "batchName": batch.name,
            }
            if regenerate:
                metadata["regenerated"] = "true"
            try:
                stored = self.storage.upload_certificate(
                    rendered.pdf_bytes,
                    batch.id,
                    participant.certificate_id,
                    category,
                    metadata,
                )
                storage_key, cloud_url = stored.key, stored.url
            except StorageError as exc:
                logger.warning(
                    "[CERT-STORE] upload failed batch=%s certificate=%s: %s",
                    batch.id,
                    participant.certificate_id,
                    exc,
                )
                result.storage_errors.append(
                    {
                        "participant_id": participant.id,
                        "certificate_id": participant.certificate_id,
                        "error": str(exc),
                    }
                )

        # rollback expires the participant, so keep its identity for reporting
        participant_id = participant.id
        name, certificate_id = participant.name, participant.certificate_id
        try:
            self.repository.mark_rendered(participant, local_path, cloud_url)
        except Exception as exc:
            logger.exception(
                "[CERT-FAIL] persist failed batch=%s participant=%s certificate=%s",
                batch.id,
                participant_id,
                certificate_id,
            )
            self.repository.discard_changes()
            return self._record_failure(participant_id, name, certificate_id, exc, result)
        result.succeeded += 1
        result.certificates.append(
            RenderResult(
                participant_id=participant_id,
                name=name,
                certificate_id=certificate_id,
                local_path=local_path,
                storage_key=storage_key,
                cloud_url=cloud_url,
                name_font_size=rendered.name_font_size,
            )
        )
        return None

    @staticmethod
    def _record_failure(
        participant_id: int,
        name: str,
        certificate_id: str,
        exc: Exception,
        result: BatchResult,
    ) -> str:
        result.failed += 1
        result.errors.append(
            {
                "participant_id": participant_id,
                "name": name,
                "certificate_id": certificate_id,
                "error": str(exc),
            }
        )
        return str(exc)

    def _force_failed(self, batch_id: int) -> None:
        try:
            self.repository.mark_failed(batch_id)
        except Exception:
            logger.exception("[CERT-BATCH] could not mark batch=%s failed", batch_id)


def default_batch_generator(channel: ProgressChannel | None = None) -> BatchGenerator:
    config = current_app.config
    return BatchGenerator(
        SqlBatchRepository(),
        storage_from_config(config),
        config.get("SITE_ROOT", "/srv"),
        channel=channel,
        default_category=config.get("CERT_DEFAULT_CATEGORY", DEFAULT_CATEGORY),
    )


def _with_progress(progress: Callable[[ProgressEvent], None] | None) -> BatchGenerator:
    channel = ProgressChannel()
    if progress is not None:
        channel.subscribe(progress)
    return default_batch_generator(channel)


def generate_batch(
    batch_id: int, progress: Callable[[ProgressEvent], None] | None = None
) -> BatchResult:
    return _with_progress(progress).generate(batch_id)


def regenerate_failed(
    batch_id: int, progress: Callable[[ProgressEvent], None] | None = None
) -> BatchResult:
    return _with_progress(progress).regenerate_failed(batch_id)


def get_batch_progress(batch_id: int) -> ProgressSnapshot:
    return default_batch_generator().get_progress(batch_id)
