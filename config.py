"""Configuration loading: config.yaml values with environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AnalysisBackendConfig, AppConfig, StripeConfig

logger = logging.getLogger(__name__)


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, AnalysisBackendConfig, StripeConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    backend_cfg = raw.get("analysis_backend", {})
    stripe_cfg = raw.get("stripe", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "AI CFO Assistant"),
            secret_key=secret_key,
            public_url=os.environ.get(
                "APP_PUBLIC_URL", app_cfg.get("public_url", "http://localhost:5000")
            ).rstrip("/"),
            enforce_paywall=_env_bool(
                "ENFORCE_PAYWALL", app_cfg.get("enforce_paywall", True)
            ),
        ),
        AnalysisBackendConfig(
            base_url=os.environ.get(
                "ANALYSIS_BACKEND_URL",
                backend_cfg.get("base_url", "http://localhost:8000"),
            ).rstrip("/"),
            timeout=int(os.environ.get(
                "ANALYSIS_BACKEND_TIMEOUT", backend_cfg.get("timeout", 60)
            )),
            health_timeout=int(os.environ.get(
                "ANALYSIS_BACKEND_HEALTH_TIMEOUT", backend_cfg.get("health_timeout", 10)
            )),
            max_retries=int(os.environ.get(
                "ANALYSIS_BACKEND_MAX_RETRIES", backend_cfg.get("max_retries", 3)
            )),
        ),
        StripeConfig(
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
            price_amount=int(os.environ.get(
                "STRIPE_PRICE_AMOUNT", stripe_cfg.get("price_amount", 2900)
            )),
            currency=os.environ.get("STRIPE_CURRENCY", stripe_cfg.get("currency", "usd")),
            interval=os.environ.get("STRIPE_INTERVAL", stripe_cfg.get("interval", "month")),
            product_name=stripe_cfg.get("product_name", "Pro Plan - AI CFO Assistant"),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///ai_cfo.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
