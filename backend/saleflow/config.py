# backend/saleflow/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/saleflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///saleflow.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # "production" hides upstream gateway payloads from API error responses
    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Receipt/order numbering and counter resets follow the shop's local calendar
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Africa/Nairobi")

    # M-Pesa (Daraja) STK push
    MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_BUSINESS_SHORTCODE = os.environ.get("MPESA_BUSINESS_SHORTCODE", "")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "")
    MPESA_TIMEOUT_SECONDS = _int_env("MPESA_TIMEOUT_SECONDS", 30)
    MPESA_QUERY_COOLDOWN_SECONDS = _int_env("MPESA_QUERY_COOLDOWN_SECONDS", 5)

    STOCK_MOVEMENT_RETENTION = _int_env("STOCK_MOVEMENT_RETENTION", 100)

    # Sliding-window limit for sale/order creation and STK initiation
    TRANSACTION_RATE_LIMIT = _int_env("TRANSACTION_RATE_LIMIT", 30)
    TRANSACTION_RATE_WINDOW_SECONDS = _int_env("TRANSACTION_RATE_WINDOW_SECONDS", 60)
