import os
from decimal import Decimal

from dotenv import load_dotenv

# Load .env file with explicit UTF-8 encoding
load_dotenv(encoding="utf-8")

DATABASE_URL = os.getenv("DATABASE_URL") or "sqlite:///./cashback_engine.db"

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

# Applied when a customer has no active membership (merchant without tiers).
DEFAULT_CASHBACK_PERCENT = Decimal(os.getenv("DEFAULT_CASHBACK_PERCENT") or "1")

RECONCILIATION_EPSILON = Decimal(os.getenv("RECONCILIATION_EPSILON") or "0.005")
SYNC_STALE_AFTER_HOURS = int(os.getenv("SYNC_STALE_AFTER_HOURS") or "24")

BATCH_SIZE = int(os.getenv("BATCH_SIZE") or "100")
ATOMIC_RETRY_ATTEMPTS = int(os.getenv("ATOMIC_RETRY_ATTEMPTS") or "3")

STORE_CREDIT_API_URL_TEMPLATE = os.getenv("STORE_CREDIT_API_URL_TEMPLATE")
STORE_CREDIT_API_TOKEN = os.getenv("STORE_CREDIT_API_TOKEN")
STORE_CREDIT_API_TIMEOUT_SECONDS = float(os.getenv("STORE_CREDIT_API_TIMEOUT_SECONDS") or "10")
