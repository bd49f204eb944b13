"""
Configuration classes for ``create_app``.

``APP_ENV`` picks one of the entries in ``config``; every value can be
overridden from the environment. Workflow limits live here too so a
deployment can tune them without code changes.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
instance_dir = os.path.join(basedir, "instance")


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme normalized for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Flask-Limiter
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")
    WIR_WRITE_RATE_LIMIT = os.getenv("WIR_WRITE_RATE_LIMIT", "60/minute")
    WIR_READ_RATE_LIMIT = os.getenv("WIR_READ_RATE_LIMIT", "200/minute")

    # Evidence files
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(instance_dir, "uploads"))
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_UPLOAD_MB", "20")) * 1024 * 1024

    # Workflow limits
    WIR_EVIDENCE_CAP = int(os.getenv("WIR_EVIDENCE_CAP", "5"))
    WIR_REMARK_MAX_LEN = int(os.getenv("WIR_REMARK_MAX_LEN", "200"))

    @classmethod
    def validate(cls):
        """Raise RuntimeError when required settings are missing."""


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(f"sqlite:///{os.path.join(instance_dir, 'wir_dev.db')}")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    UPLOAD_FOLDER = os.path.join(instance_dir, "test_uploads")


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    @classmethod
    def validate(cls):
        if not cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
