"""
Environment Configuration Utility

Provides environment detection and the secrets policy that depends on it.

ENVIRONMENT values:
- production: JWT_SECRET and a provided scan token keypair are mandatory
- development: Development session secret and ephemeral scan keys allowed
- test: Same allowances as development, for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def cors_allowed_origins() -> list:
    """Comma-separated CORS_ALLOWED_ORIGINS as a list; empty means no browser origins."""
    raw = os.environ.get("CORS_ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]
