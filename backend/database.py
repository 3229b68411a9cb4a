"""
Database connection and configuration

Environment Validation - fails fast with clear error messages if required
variables are missing. The client is created by the application at startup
and handed to request handlers through dependencies; nothing here connects
at import time.

Transactions require MongoDB running as a replica set.
"""
from motor.motor_asyncio import AsyncIOMotorClient
from fastapi import Request
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

from credit_wallet.repository import MongoAccountStore, MongoCreditStore

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def validate_required_env_vars():
    """
    Validate all critical environment variables exist before the app starts.
    Raises ValueError with clear error message if required variables are missing.
    """
    required_vars = {
        "MONGO_URL": "MongoDB replica set connection string (e.g., mongodb://localhost:27017/?replicaSet=rs0)",
        "DB_NAME": "Database name (e.g., kiosk_credits)"
    }

    missing = []
    for var, description in required_vars.items():
        if not os.environ.get(var):
            missing.append(f"  - {var}: {description}")

    if missing:
        error_msg = (
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            "=" * 60 + "\n"
            "The following environment variables must be set:\n\n"
            + "\n".join(missing) + "\n\n"
            "Please check your .env file or environment configuration.\n"
            "See .env.example for reference.\n"
            + "=" * 60
        )
        raise ValueError(error_msg)


def create_client(mongo_url: str) -> AsyncIOMotorClient:
    """MongoDB client with connection pool configuration"""
    try:
        return AsyncIOMotorClient(
            mongo_url,
            maxPoolSize=50,
            minPoolSize=5,
            connectTimeoutMS=5000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            tz_aware=True
        )
    except Exception as e:
        raise ValueError(f"Failed to create MongoDB client: {e}")


async def check_db_connection(client, db):
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
        await db.list_collection_names()

        logger.info(f"Database connected successfully: {db.name}")
        return True, None

    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg


# ==================== REQUEST DEPENDENCIES ====================

def get_credit_store(request: Request) -> MongoCreditStore:
    return request.app.state.credit_store


def get_account_store(request: Request) -> MongoAccountStore:
    return request.app.state.account_store
