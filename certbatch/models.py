from __future__ import annotations

from sqlalchemy.orm import validates

from .app import db
from .constants import (
    BATCH_PENDING,
    BATCH_STATUSES,
    CERTIFICATE_ID_MAX,
    DEFAULT_ID_PREFIX,
    PARTICIPANT_EMAIL_MAX,
    PARTICIPANT_NAME_MAX,
    SURFACE_IMAGE,
    SURFACE_PDF,
)


class Template(db.Model):
    __tablename__ = "templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    categories = db.Column(db.JSON, nullable=False, default=list)
    file_path = db.Column(db.String(500))
    storage_key = db.Column(db.String(500))
    surface_kind = db.Column(db.String(10), nullable=False, default=SURFACE_PDF)
    image_format = db.Column(db.String(10))
    placement_config = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    batches = db.relationship("Batch", back_populates="template")

    @validates("surface_kind")
    def check_surface_kind(self, key, value):
        if value not in (SURFACE_PDF, SURFACE_IMAGE):
            raise ValueError(f"Unsupported surface kind: {value!r}")
        return value


class Batch(db.Model):
    __tablename__ = "batches"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    event_categories = db.Column(db.JSON, nullable=False, default=list)
    template_id = db.Column(db.Integer, db.ForeignKey("templates.id"))
    total_participants = db.Column(db.Integer, nullable=False, default=0)
    certificates_generated = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(50), nullable=False, default=BATCH_PENDING)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    template = db.relationship("Template", back_populates="batches")
    participants = db.relationship(
        "Participant",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="Participant.id",
    )

    @validates("status")
    def check_status(self, key, value):
        if value not in BATCH_STATUSES:
            raise ValueError(f"Unknown batch status: {value!r}")
        return value

    @property
    def primary_category(self) -> str | None:
        categories = self.event_categories or []
        return categories[0] if categories else None


class Participant(db.Model):
    __tablename__ = "participants"

    id = db.Column(db.Integer, primary_key=True)
    sr_no = db.Column(db.Integer)
    name = db.Column(db.String(PARTICIPANT_NAME_MAX), nullable=False)
    email = db.Column(db.String(PARTICIPANT_EMAIL_MAX), nullable=False, index=True)
    certificate_id = db.Column(
        db.String(CERTIFICATE_ID_MAX), nullable=False, unique=True
    )
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id"), nullable=False, index=True
    )
    certificate_path = db.Column(db.String(500))
    cloud_url = db.Column(db.String(1000))
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    batch = db.relationship("Batch", back_populates="participants")

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return value.strip().lower()


class CertificateIdLog(db.Model):
    __tablename__ = "certificate_id_logs"

    id = db.Column(db.Integer, primary_key=True)
    certificate_id = db.Column(
        db.String(CERTIFICATE_ID_MAX), nullable=False, unique=True
    )
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), index=True)
    event_prefix = db.Column(db.String(10), nullable=False, default=DEFAULT_ID_PREFIX)
    generated_at = db.Column(db.DateTime, server_default=db.func.now(), index=True)
