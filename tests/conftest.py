import os
import pathlib
import sys
from datetime import datetime, timezone
from io import BytesIO

import pytest
from botocore.exceptions import ClientError
from PIL import Image
from reportlab.pdfgen import canvas

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certbatch.app import create_app, db


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("SITE_ROOT", str(tmp_path / "site"))
    monkeypatch.delenv("CERT_S3_BUCKET", raising=False)
    monkeypatch.delenv("CERT_ID_PREFIX", raising=False)
    application = create_app()
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


def make_pdf_template(width=842, height=595) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    c.rect(20, 20, width - 40, height - 40)
    c.drawString(40, height - 60, "Certificate of Participation")
    c.showPage()
    c.save()
    return buf.getvalue()


def make_png_template(width=1600, height=1200, color=(240, 230, 200)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def pdf_template_bytes():
    return make_pdf_template()


@pytest.fixture
def png_template_bytes():
    return make_png_template()


class FakeS3Paginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix=""):
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        for start in range(0, max(len(keys), 1), 2):
            chunk = keys[start : start + 2]
            yield {
                "Contents": [
                    {
                        "Key": k,
                        "Size": len(self.client.objects[k]["Body"]),
                        "LastModified": self.client.objects[k]["LastModified"],
                        "ETag": '"etag"',
                    }
                    for k in chunk
                ]
            }


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client used here."""

    def __init__(self, fail_puts=False):
        self.objects = {}
        self.fail_puts = fail_puts
        self.lifecycle = None
        self.delete_calls = []
        self.put_keys = []

    def put_object(self, **params):
        if self.fail_puts:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject"
            )
        self.put_keys.append(params["Key"])
        stored = dict(params)
        stored["LastModified"] = datetime(2024, 3, 15, tzinfo=timezone.utc)
        self.objects[params["Key"]] = stored
        return {"ETag": '"etag"'}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakeS3Paginator(self)

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        if Params["Key"].endswith("broken.pdf"):
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject"
            )
        return f"https://signed.example/{Params['Key']}?ttl={ExpiresIn}"

    def delete_objects(self, Bucket, Delete):
        self.delete_calls.append(Delete)
        for item in Delete["Objects"]:
            self.objects.pop(item["Key"], None)
        return {"Deleted": Delete["Objects"]}

    def put_bucket_lifecycle_configuration(self, Bucket, LifecycleConfiguration):
        self.lifecycle = LifecycleConfiguration


@pytest.fixture
def s3_client():
    return FakeS3Client()
