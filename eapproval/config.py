"""
Electronic Approval Engine
Environment configuration.

``create_app`` instantiates one of the classes in ``config`` (picked by
``APP_ENV``) and loads its upper-case attributes.  Everything tunable is
read from the environment once at import.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(var, fallback=None):
    # SQLAlchemy 2.x no longer accepts the legacy postgres:// scheme
    url = os.getenv(var, "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url or fallback


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    APPROVAL_WRITE_LIMIT = os.getenv("APPROVAL_WRITE_LIMIT", "60 per minute")
    SLOW_REQUEST_MS = _env_int("SLOW_REQUEST_MS", 1000)

    # Organisation-hierarchy fallback route
    HIERARCHY_MAX_DEPTH = _env_int("HIERARCHY_MAX_DEPTH", 20)
    HIERARCHY_MAX_APPROVERS = _env_int("HIERARCHY_MAX_APPROVERS", 2)
    HIERARCHY_MIN_APPROVER_LEVEL = _env_int("HIERARCHY_MIN_APPROVER_LEVEL", 1)

    # Used when a template or manual route does not name a policy
    DEFAULT_AGREEMENT_POLICY = os.getenv("DEFAULT_AGREEMENT_POLICY", "BLOCKING")

    # Max scheduled auto-approvals applied per runner invocation
    AUTO_APPROVAL_BATCH_SIZE = _env_int("AUTO_APPROVAL_BATCH_SIZE", 200)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "DATABASE_URL", f"sqlite:///{os.path.join(basedir, 'instance', 'eapproval_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL must be set in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
