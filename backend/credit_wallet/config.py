"""
Credit Wallet Configuration and Constants

Denominations, token lifetimes, guard windows and error messages are defined here.
Values that operators tune come from the environment.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


# ==================== DENOMINATIONS ====================
# The only amounts a single mutation may carry
DENOMINATIONS = (10, 20, 30)

# ==================== TOKENS ====================
JWT_SECRET = os.environ.get("JWT_SECRET", "")
DEV_JWT_SECRET = "dev-only-session-secret-change-in-production"
SESSION_TOKEN_ALGORITHM = "HS256"
SCAN_TOKEN_ALGORITHM = "RS256"

SESSION_TOKEN_TTL_SECONDS = int(os.environ.get("SESSION_TOKEN_TTL_SECONDS", 60 * 60))
SCAN_TOKEN_TTL_SECONDS = int(os.environ.get("SCAN_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60))

# Values of the "typ" claim
SESSION_TOKEN_TYPE = "SESSION"
SCAN_TOKEN_TYPE = "SCAN"

# "provided" or "ephemeral"; unset means ephemeral outside production
SCAN_TOKEN_KEY_MODE = os.environ.get("SCAN_TOKEN_KEY_MODE", "").strip().lower()
SCAN_TOKEN_PRIVATE_KEY = os.environ.get("SCAN_TOKEN_PRIVATE_KEY", "")
SCAN_TOKEN_PUBLIC_KEY = os.environ.get("SCAN_TOKEN_PUBLIC_KEY", "")

# ==================== REQUEST GUARDS ====================
TIMESTAMP_SKEW_SECONDS = int(os.environ.get("TIMESTAMP_SKEW_SECONDS", 5 * 60))
IDEMPOTENCY_KEY_MAX_LENGTH = 128

RATE_LIMITS = {
    "window_seconds": 60,
    "max_writes_per_window": int(os.environ.get("WRITE_RATE_LIMIT_PER_MINUTE", 60)),
    # Tracked clients before idle ones are swept from the limiter cache
    "sweep_threshold": 1024,
}

# ==================== TRANSACTIONS ====================
# How long a mutation may keep retrying a contended account row
LOCK_TIMEOUT_SECONDS = float(os.environ.get("LOCK_TIMEOUT_SECONDS", 5))
LOCK_RETRY_BACKOFF_SECONDS = 0.05
MAX_COMMIT_TIME_MS = 5000
# How long an unknown commit outcome is retried before the client is told to resubmit
COMMIT_RETRY_SECONDS = float(os.environ.get("COMMIT_RETRY_SECONDS", 10))

# ==================== ACCOUNTS ====================
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 200

# ==================== COLLECTIONS ====================
ACCOUNTS_COLLECTION = "accounts"
REQUESTS_COLLECTION = "credit_requests"
META_COLLECTION = "credits_meta"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "VALIDATION_ERROR": "Request failed validation.",
    "BAD_TIMESTAMP": "X-Request-Timestamp must be an RFC 3339 instant with a UTC offset.",
    "STALE_REQUEST": "Stale or early request.",
    "MISSING_IDEMPOTENCY_KEY": "Missing Idempotency-Key header.",
    "MISSING_TOKEN": "Missing token.",
    "INVALID_TOKEN": "Invalid token.",
    "EXPIRED_TOKEN": "Token expired.",
    "WRONG_TOKEN_TYPE": "Wrong token type.",
    "INVALID_CREDENTIALS": "Invalid credentials.",
    "FORBIDDEN": "Forbidden.",
    "TARGET_NOT_FOUND": "Target not found.",
    "INVALID_TARGET": "Invalid scan token.",
    "DUPLICATE_REQUEST": "Duplicate request.",
    "USERNAME_TAKEN": "Username taken.",
    "INSUFFICIENT_CREDITS": "Insufficient credits.",
    "RATE_LIMITED": "Too many write requests. Please slow down.",
    "TARGET_BUSY": "Target account is busy. Retry the request with the same Idempotency-Key.",
    "INTERNAL_ERROR": "Server error.",
    "COMMIT_OUTCOME_UNKNOWN": (
        "The change may or may not have been applied. Retry with the same "
        "Idempotency-Key; DUPLICATE_REQUEST confirms it was applied."
    ),
}
