"""
Credit Wallet Database Initialization

Creates the collections and indexes the credit transactions depend on.
Multi-document transactions cannot create collections, so they must exist
before the first mutation. The unique indexes carry two invariants:
accounts.username (UsernameTaken) and credit_requests.idempotency_key
(DuplicateRequest when two transactions race past the existence check).

Safe to re-run: only missing collections and indexes are created, nothing
is dropped. The server calls ensure_indexes() on every startup; this module
is also a CLI for provisioning ahead of deployment.

Usage:
    python -m credit_wallet.db_init
    python -m credit_wallet.db_init --dry-run
    ENVIRONMENT=production CREDITS_INIT_CONFIRM=YES python -m credit_wallet.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from .config import ACCOUNTS_COLLECTION, META_COLLECTION, REQUESTS_COLLECTION

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "credits-v1"

# MongoDB "IndexOptionsConflict" / "IndexKeySpecsConflict" when racing another initializer
INDEX_EXISTS_CODES = {85, 86}


@dataclass(frozen=True)
class IndexDefinition:
    collection: str
    keys: Tuple[Tuple[str, int], ...]
    name: str
    unique: bool = False


REQUIRED_COLLECTIONS = (ACCOUNTS_COLLECTION, REQUESTS_COLLECTION, META_COLLECTION)

REQUIRED_INDEXES = (
    IndexDefinition(ACCOUNTS_COLLECTION, (("id", 1),), "uniq_account_id", unique=True),
    IndexDefinition(ACCOUNTS_COLLECTION, (("username", 1),), "uniq_username", unique=True),
    IndexDefinition(REQUESTS_COLLECTION, (("idempotency_key", 1),), "uniq_idempotency_key", unique=True),
    IndexDefinition(REQUESTS_COLLECTION, (("target_id", 1), ("created_at", -1)), "target_newest_first"),
    IndexDefinition(REQUESTS_COLLECTION, (("actor_id", 1),), "by_actor"),
)


@dataclass
class InitPlan:
    collections: List[str]
    indexes: List[IndexDefinition]

    @property
    def empty(self) -> bool:
        return not self.collections and not self.indexes

    def describe(self) -> List[str]:
        lines = [f"create collection {name}" for name in self.collections]
        for index in self.indexes:
            keys = ", ".join(f"{field} {direction:+d}" for field, direction in index.keys)
            unique = " unique" if index.unique else ""
            lines.append(f"create{unique} index {index.name} on {index.collection} ({keys})")
        return lines


def production_confirmed() -> Tuple[bool, str]:
    """Production runs need CREDITS_INIT_CONFIRM=YES; everything else proceeds."""
    environment = os.environ.get("ENVIRONMENT", "development").lower()
    if environment != "production":
        return True, f"environment={environment}"

    confirm = os.environ.get("CREDITS_INIT_CONFIRM", "")
    if confirm == "YES":
        return True, "environment=production (confirmed)"
    return False, (
        "Refusing to initialize a production database without "
        f"CREDITS_INIT_CONFIRM=YES (got '{confirm}')"
    )


async def plan_init(db) -> InitPlan:
    """Work out which collections and indexes are missing."""
    existing = set(await db.list_collection_names())
    collections = [name for name in REQUIRED_COLLECTIONS if name not in existing]

    present = {}
    for name in {index.collection for index in REQUIRED_INDEXES}:
        present[name] = set(await db[name].index_information()) if name in existing else set()

    indexes = [index for index in REQUIRED_INDEXES if index.name not in present[index.collection]]
    return InitPlan(collections=collections, indexes=indexes)


async def apply_plan(db, plan: InitPlan):
    for name in plan.collections:
        try:
            await db.create_collection(name)
        except CollectionInvalid:
            # Created concurrently
            pass
        logger.info(f"Collection ready: {name}")

    for index in plan.indexes:
        try:
            await db[index.collection].create_index(list(index.keys), name=index.name, unique=index.unique)
        except OperationFailure as e:
            if e.code not in INDEX_EXISTS_CODES:
                raise
        logger.info(f"Index ready: {index.collection}.{index.name}")


async def ensure_indexes(db) -> InitPlan:
    """Create whatever is missing. Returns the plan that was applied."""
    plan = await plan_init(db)
    if plan.empty:
        logger.debug("Credit wallet collections and indexes already in place")
        return plan
    await apply_plan(db, plan)
    return plan


async def stamp_version(db):
    await db[META_COLLECTION].update_one(
        {"_id": "schema"},
        {"$set": {"version": SCHEMA_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True,
    )


async def run(dry_run: bool = False) -> int:
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, reason = production_confirmed()
    if not allowed:
        logger.error(reason)
        return 1
    logger.info(reason)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("MONGO_URL and DB_NAME must be set")
        return 1

    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
    try:
        db = client[db_name]
        await client.admin.command('ping')

        plan = await plan_init(db)
        for line in plan.describe() or ["nothing to do"]:
            logger.info(f"{'[dry-run] ' if dry_run else ''}{line}")

        if not dry_run:
            await apply_plan(db, plan)
            await stamp_version(db)
            logger.info(f"{db_name} at schema {SCHEMA_VERSION}")
    finally:
        client.close()
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Create credit wallet collections and indexes")
    parser.add_argument('--dry-run', action='store_true', help='Print the plan without changing anything')
    args = parser.parse_args()

    sys.exit(asyncio.run(run(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
