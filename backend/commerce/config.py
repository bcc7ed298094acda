# backend/commerce/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///commerce.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # =========================================================================
    # STORE PRICING (cents / basis points)
    # =========================================================================
    STORE_CURRENCY = os.environ.get("STORE_CURRENCY", "LKR")
    SHIPPING_STANDARD_CENTS = _env_int("SHIPPING_STANDARD_CENTS", 999)
    SHIPPING_EXPRESS_CENTS = _env_int("SHIPPING_EXPRESS_CENTS", 1999)
    FREE_SHIPPING_THRESHOLD_CENTS = _env_int("FREE_SHIPPING_THRESHOLD_CENTS", 10000)
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 800)

    # =========================================================================
    # ORDERS & INVENTORY
    # =========================================================================
    DEFAULT_LOW_STOCK_THRESHOLD = 5
    ORDER_NUMBER_ATTEMPTS = 5

    # =========================================================================
    # PAYMENT GATEWAY
    # =========================================================================
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://sandbox.directpay.lk/v1")
    PAYMENT_MERCHANT_ID = os.environ.get("PAYMENT_MERCHANT_ID", "")
    PAYMENT_API_KEY = os.environ.get("PAYMENT_API_KEY", "")
    # Empty secret disables webhook signature checks (local development only)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "15"))

    # Storefront base, used for gateway return/cancel/notify URLs
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:5173")
