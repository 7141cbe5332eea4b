"""
Compliance Approvals
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approvals_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_list(name, default):
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def _env_json(name, default=None):
    """Read a JSON object from an env var (module type -> list mappings)."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{name} must be valid JSON: {exc}") from exc


def _env_int(name, default=None):
    raw = os.getenv(name)
    return int(raw) if raw else default


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    APPROVAL_RATE_LIMIT = os.getenv("APPROVAL_RATE_LIMIT", "120/minute")

    # Assignment engine defaults (overridable at runtime via the settings API)
    APPROVAL_AUTO_ASSIGN_ON_SUBMIT = os.getenv("APPROVAL_AUTO_ASSIGN_ON_SUBMIT", "true").lower() == "true"
    APPROVAL_STRATEGY = os.getenv("APPROVAL_STRATEGY", "workload_balanced")
    APPROVAL_MAX_REVIEWERS = _env_int("APPROVAL_MAX_REVIEWERS", 2)
    APPROVAL_MAX_WORKLOAD = _env_int("APPROVAL_MAX_WORKLOAD")
    APPROVAL_ELIGIBLE_ROLES = _env_list("APPROVAL_ELIGIBLE_ROLES", ["admin", "decision_maker"])
    APPROVAL_DEPARTMENT_MAP = _env_json("APPROVAL_DEPARTMENT_MAP")
    APPROVAL_EXPERTISE_MAP = _env_json("APPROVAL_EXPERTISE_MAP")
    APPROVAL_FALLBACK_USER_ID = os.getenv("APPROVAL_FALLBACK_USER_ID") or None


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a single static connection; no pool tuning
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    APPROVAL_AUTO_ASSIGN_ON_SUBMIT = True
    APPROVAL_STRATEGY = "workload_balanced"
    APPROVAL_MAX_REVIEWERS = 2
    APPROVAL_MAX_WORKLOAD = None
    APPROVAL_ELIGIBLE_ROLES = ["admin", "decision_maker"]
    APPROVAL_DEPARTMENT_MAP = None
    APPROVAL_EXPERTISE_MAP = None
    APPROVAL_FALLBACK_USER_ID = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
