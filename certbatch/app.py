import logging
import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .models import Batch, CertificateIdLog, Participant, Template  # noqa: E402,F401
from .constants import DEFAULT_CATEGORY, DEFAULT_ID_PREFIX  # noqa: E402


def create_app():
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "certbatch")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certbatch")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024

    site_root = os.getenv("SITE_ROOT", "/srv")
    app.config["SITE_ROOT"] = site_root

    # object storage; renders stay local-only when no bucket is set
    app.config["CERT_S3_BUCKET"] = os.getenv("CERT_S3_BUCKET", "")
    app.config["AWS_REGION"] = os.getenv("AWS_REGION", "us-east-1")
    app.config["CERT_S3_ENDPOINT"] = os.getenv("CERT_S3_ENDPOINT") or None
    try:
        url_expiry = int(os.getenv("CERT_URL_EXPIRY", "3600"))
    except ValueError:
        logging.warning("CERT_URL_EXPIRY is not an integer; using 3600")
        url_expiry = 3600
    app.config["CERT_URL_EXPIRY"] = url_expiry

    app.config["CERT_ID_PREFIX"] = (
        os.getenv("CERT_ID_PREFIX", DEFAULT_ID_PREFIX).strip().upper()
        or DEFAULT_ID_PREFIX
    )
    app.config["CERT_DEFAULT_CATEGORY"] = os.getenv(
        "CERT_DEFAULT_CATEGORY", DEFAULT_CATEGORY
    )

    db.init_app(app)

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    return app
