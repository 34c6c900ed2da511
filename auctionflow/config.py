import os
from decimal import Decimal

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./auctionflow.db")

PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "mock").lower()  # 'stripe' | 'mock'

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_BASE = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
APP_URL = os.environ.get("APP_URL", "http://localhost:8000")

# upper bounds for anything crossing a process boundary
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))

DEFAULT_BUYERS_PREMIUM_RATE = Decimal(
    os.getenv("DEFAULT_BUYERS_PREMIUM_RATE", "0.10")
)
DEFAULT_TAX_RATE = Decimal(os.getenv("DEFAULT_TAX_RATE", "0.085"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()
INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))

# postgres pool; the DB gate defaults to the pool size (10 on SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0")) or None
