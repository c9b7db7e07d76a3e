from __future__ import annotations

import logging
import os
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, NamedTuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import StorageError

logger = logging.getLogger("certbatch.storage")

CERTIFICATE_ROOT = "certificates/"
TEMPLATE_ROOT = "templates/"
CERTIFICATE_STORAGE_CLASS = "STANDARD_IA"
SERVER_SIDE_ENCRYPTION = "AES256"
DEFAULT_URL_EXPIRY = 3600
_DELETE_CHUNK = 1000

LIFECYCLE_RULES = [
    {
        "ID": "CertificateLifecycle",
        "Status": "Enabled",
        "Filter": {"Prefix": CERTIFICATE_ROOT},
        "Transitions": [
            {"Days": 30, "StorageClass": "STANDARD_IA"},
            {"Days": 90, "StorageClass": "GLACIER"},
            {"Days": 365, "StorageClass": "DEEP_ARCHIVE"},
        ],
    },
    {
        "ID": "TemplateLifecycle",
        "Status": "Enabled",
        "Filter": {"Prefix": TEMPLATE_ROOT},
        "Transitions": [{"Days": 90, "StorageClass": "STANDARD_IA"}],
    },
]


class StoredObject(NamedTuple):
    key: str
    url: str
    etag: str | None
    metadata: dict[str, str]


class ObjectInfo(NamedTuple):
    key: str
    size: int
    last_modified: datetime | None
    etag: str | None


class PresignedUrl(NamedTuple):
    key: str
    certificate_id: str
    url: str | None
    expires_at: datetime | None
    error: str | None = None


def sanitize_category(category: str | None) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", category or "").lower()


def _metadata_value(value) -> str:
    # S3 user metadata must be ASCII
    text = "" if value is None else str(value)
    return text.encode("ascii", "replace").decode("ascii")


def _size_mb(size: int) -> float:
    return round(size / (1024 * 1024), 2)


class CertificateStorage:
    """Date/category/batch organised certificate storage on an S3 bucket."""

    def __init__(
        self,
        client,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        url_expiry: int = DEFAULT_URL_EXPIRY,
        clock=None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.url_expiry = url_expiry
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def certificate_prefix(
        self, batch_id: int | str, category: str | None, on: date | None = None
    ) -> str:
        day = (on or self.clock().date()).isoformat()
        return f"{CERTIFICATE_ROOT}{day}/{sanitize_category(category)}/batch_{batch_id}/"

    def certificate_key(
        self,
        batch_id: int | str,
        certificate_id: str,
        category: str | None,
        on: date | None = None,
    ) -> str:
        return f"{self.certificate_prefix(batch_id, category, on)}{certificate_id}.pdf"

    def template_prefix(self, category: str | None) -> str:
        return f"{TEMPLATE_ROOT}{sanitize_category(category)}/"

    def object_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        region = self.region or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{key}"

    def put_bytes(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict | None = None,
        storage_class: str | None = None,
    ) -> StoredObject:
        meta = {k: _metadata_value(v) for k, v in (metadata or {}).items()}
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "ServerSideEncryption": SERVER_SIDE_ENCRYPTION,
            "Metadata": meta,
        }
        if storage_class:
            params["StorageClass"] = storage_class
        try:
            response = self.client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc
        logger.info("[CERT-STORE] uploaded key=%s bytes=%d", key, len(data))
        return StoredObject(key, self.object_url(key), response.get("ETag"), meta)

    def upload_certificate(
        self,
        pdf_bytes: bytes,
        batch_id: int | str,
        certificate_id: str,
        category: str | None,
        metadata: dict | None = None,
    ) -> StoredObject:
        key = self.certificate_key(batch_id, certificate_id, category)
        upload_metadata = {
            "batchId": str(batch_id),
            "certificateId": certificate_id,
            "category": category or "",
            "uploadedAt": self.clock().isoformat(),
        }
        upload_metadata.update(metadata or {})
        return self.put_bytes(
            key,
            pdf_bytes,
            "application/pdf",
            metadata=upload_metadata,
            storage_class=CERTIFICATE_STORAGE_CLASS,
        )

    def upload_template(
        self, data: bytes, filename: str, category: str | None, content_type: str
    ) -> StoredObject:
        key = f"{self.template_prefix(category)}{os.path.basename(filename)}"
        return self.put_bytes(
            key, data, content_type, metadata={"category": category or ""}
        )

    def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        objects: list[ObjectInfo] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        ObjectInfo(
                            key=item["Key"],
                            size=int(item.get("Size", 0)),
                            last_modified=item.get("LastModified"),
                            etag=item.get("ETag"),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to list {prefix!r}: {exc}") from exc
        return objects

    def batch_certificates(
        self, batch_id: int | str, category: str | None, on: date | None = None
    ) -> list[ObjectInfo]:
        return self.list_objects(self.certificate_prefix(batch_id, category, on))

    def batch_certificates_any_date(self, batch_id: int | str, category: str | None) -> list[ObjectInfo]:
        suffix = f"/{sanitize_category(category)}/batch_{batch_id}/"
        return [obj for obj in self.list_objects(CERTIFICATE_ROOT) if suffix in obj.key]

    def presigned_url(self, key: str, expires_in: int | None = None) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or self.url_expiry,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to sign {key}: {exc}") from exc

    def presigned_urls(
        self, keys: Iterable[str], expires_in: int | None = None
    ) -> list[PresignedUrl]:
        ttl = expires_in or self.url_expiry
        results: list[PresignedUrl] = []
        for key in keys:
            certificate_id = os.path.splitext(os.path.basename(key))[0]
            try:
                url = self.presigned_url(key, ttl)
            except StorageError as exc:
                results.append(PresignedUrl(key, certificate_id, None, None, str(exc)))
                continue
            expires_at = self.clock() + timedelta(seconds=ttl)
            results.append(PresignedUrl(key, certificate_id, url, expires_at))
        return results

    def delete_prefix(self, prefix: str) -> dict:
        if not prefix or prefix in (CERTIFICATE_ROOT, TEMPLATE_ROOT):
            raise StorageError(f"Refusing to delete broad prefix {prefix!r}")
        keys = [obj.key for obj in self.list_objects(prefix)]
        deleted = failed = 0
        for start in range(0, len(keys), _DELETE_CHUNK):
            chunk = keys[start : start + _DELETE_CHUNK]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
                )
            except (BotoCoreError, ClientError):
                logger.exception("[CERT-STORE] delete failed prefix=%s", prefix)
                failed += len(chunk)
                continue
            errors = response.get("Errors", [])
            failed += len(errors)
            deleted += len(chunk) - len(errors)
        logger.info(
            "[CERT-STORE] purge prefix=%s deleted=%d failed=%d", prefix, deleted, failed
        )
        return {"prefix": prefix, "deleted": deleted, "failed": failed}

    def storage_stats(self) -> dict:
        certificates = self.list_objects(CERTIFICATE_ROOT)
        templates = self.list_objects(TEMPLATE_ROOT)
        cert_size = sum(obj.size for obj in certificates)
        template_size = sum(obj.size for obj in templates)
        stamps = [obj.last_modified for obj in certificates if obj.last_modified]
        return {
            "certificates": {
                "total_files": len(certificates),
                "total_size": cert_size,
                "total_size_mb": _size_mb(cert_size),
                "oldest": min(stamps).isoformat() if stamps else None,
                "newest": max(stamps).isoformat() if stamps else None,
            },
            "templates": {
                "total_files": len(templates),
                "total_size": template_size,
                "total_size_mb": _size_mb(template_size),
            },
        }

    def install_lifecycle_policy(self) -> int:
        try:
            self.client.put_bucket_lifecycle_configuration(
                Bucket=self.bucket,
                LifecycleConfiguration={"Rules": LIFECYCLE_RULES},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to install lifecycle policy: {exc}") from exc
        logger.info("[CERT-STORE] lifecycle policy installed bucket=%s", self.bucket)
        return len(LIFECYCLE_RULES)


def storage_from_config(config) -> CertificateStorage | None:
    bucket = config.get("CERT_S3_BUCKET")
    if not bucket:
        return None
    region = config.get("AWS_REGION") or "us-east-1"
    endpoint = config.get("CERT_S3_ENDPOINT") or None
    client = boto3.client(
        "s3",
        region_name=region,
        endpoint_url=endpoint,
        config=Config(signature_version="s3v4"),
    )
    return CertificateStorage(
        client,
        bucket,
        region=region,
        endpoint_url=endpoint,
        url_expiry=config.get("CERT_URL_EXPIRY", DEFAULT_URL_EXPIRY),
    )
