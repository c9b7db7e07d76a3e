from __future__ import annotations

from typing import NamedTuple, Sequence


class CertbatchError(Exception):
    """Base class for certificate engine failures."""


class PlacementError(CertbatchError, ValueError):
    """Raised when a placement configuration cannot be interpreted."""


class CertificateRenderError(CertbatchError):
    """Raised when a template surface cannot be rendered onto."""


class TemplateSourceError(CertbatchError):
    """Raised when a template's source surface is missing or unsupported."""


class StorageError(CertbatchError):
    """Raised when object storage rejects an operation."""


class CertificateIdExhausted(CertbatchError):
    """Raised when no unique certificate ID was found within the attempt ceiling."""


class BatchGenerationError(CertbatchError):
    """Raised for batch-fatal conditions; the batch is left in ``failed``."""


class RowError(NamedTuple):
    field: str
    value: object
    constraint: str
    message: str


class RowValidationFailure(NamedTuple):
    row: int
    data: dict
    errors: tuple[RowError, ...]


class ParticipantValidationError(CertbatchError):
    """Raised when an uploaded participant sheet has no usable rows."""

    def __init__(self, message: str, failures: Sequence[RowValidationFailure] = ()):
        super().__init__(message)
        self.failures = tuple(failures)
