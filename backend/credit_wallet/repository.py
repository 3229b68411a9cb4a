"""
Credit Wallet Repository

MongoDB access for accounts and the credit request ledger.

CRITICAL: Balance mutations only happen inside MongoCreditStore.run_in_transaction().
- The target account document is write-locked (locked_at) when it is resolved,
  so any other transaction touching it gets a WriteConflict and retries
- Deducts are additionally guarded by a conditional update (credits >= amount)
- The ledger insert shares the transaction; a unique index on idempotency_key
  rejects a second insert even if two transactions pass the existence check
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from pymongo import ReadPreference, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from .config import (
    ACCOUNTS_COLLECTION,
    COMMIT_RETRY_SECONDS,
    LOCK_RETRY_BACKOFF_SECONDS,
    LOCK_TIMEOUT_SECONDS,
    MAX_COMMIT_TIME_MS,
    REQUESTS_COLLECTION,
)
from .errors import CommitOutcomeUnknown, DuplicateRequest, InsufficientCredits, InternalError, TargetBusy, UsernameTaken
from .models import Account, CreditRequestRecord, LockedAccount, MutationKind, Role

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"


class CreditTransaction(Protocol):
    """Operations available inside one credit transaction."""

    async def request_exists(self, idempotency_key: str) -> bool: ...

    async def lock_account(self, username: str) -> Optional[LockedAccount]: ...

    async def apply_delta(self, account_id: str, delta: int) -> int: ...

    async def record_request(self, record: CreditRequestRecord) -> None: ...


class MongoCreditTransaction:
    """CreditTransaction bound to a MongoDB client session with an open transaction."""

    def __init__(self, db, session):
        self.db = db
        self.session = session

    async def request_exists(self, idempotency_key: str) -> bool:
        doc = await self.db[REQUESTS_COLLECTION].find_one(
            {"idempotency_key": idempotency_key},
            {"_id": 1},
            session=self.session,
        )
        return doc is not None

    async def lock_account(self, username: str) -> Optional[LockedAccount]:
        """Read the account and take its document write lock for the rest of the transaction."""
        doc = await self.db[ACCOUNTS_COLLECTION].find_one_and_update(
            {"username": username},
            {"$set": {"locked_at": datetime.now(timezone.utc).isoformat()}},
            projection={"_id": 0, "id": 1, "username": 1, "credits": 1},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        if doc is None:
            return None
        return LockedAccount(id=doc["id"], username=doc["username"], credits=doc.get("credits", 0))

    async def apply_delta(self, account_id: str, delta: int) -> int:
        """Apply a signed delta and return the new balance. Never lets credits go negative."""
        query: Dict[str, Any] = {"id": account_id}
        if delta < 0:
            query["credits"] = {"$gte": -delta}

        doc = await self.db[ACCOUNTS_COLLECTION].find_one_and_update(
            query,
            {"$inc": {"credits": delta}},
            projection={"_id": 0, "credits": 1},
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        if doc is None:
            raise InsufficientCredits()
        return doc["credits"]

    async def record_request(self, record: CreditRequestRecord) -> None:
        try:
            await self.db[REQUESTS_COLLECTION].insert_one(
                record.model_dump(mode="json"),
                session=self.session,
            )
        except DuplicateKeyError:
            raise DuplicateRequest()


class MongoCreditStore:
    """
    Runs credit transactions against a replica-set MongoDB.

    A transient write conflict means another transaction holds the target
    document; the whole attempt is retried until lock_timeout has elapsed,
    after which TargetBusy is raised and the caller retries later.
    """

    def __init__(self, client, db, lock_timeout: float = LOCK_TIMEOUT_SECONDS,
                 retry_backoff: float = LOCK_RETRY_BACKOFF_SECONDS,
                 commit_retry_timeout: float = COMMIT_RETRY_SECONDS):
        self.client = client
        self.db = db
        self.lock_timeout = lock_timeout
        self.retry_backoff = retry_backoff
        self.commit_retry_timeout = commit_retry_timeout

    async def run_in_transaction(self, callback: Callable[[CreditTransaction], Awaitable[T]]) -> T:
        deadline = time.monotonic() + self.lock_timeout
        try:
            async with await self.client.start_session() as session:
                while True:
                    try:
                        return await self._attempt(session, callback)
                    except PyMongoError as e:
                        if not e.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                            raise
                        if time.monotonic() >= deadline:
                            logger.warning(f"Credit transaction gave up after {self.lock_timeout}s of write conflicts")
                            raise TargetBusy()
                        await asyncio.sleep(self.retry_backoff)
        except PyMongoError as e:
            logger.error(f"Credit transaction failed: {e}")
            raise InternalError() from e

    async def _attempt(self, session, callback):
        session.start_transaction(
            read_concern=ReadConcern("snapshot"),
            write_concern=WriteConcern("majority"),
            read_preference=ReadPreference.PRIMARY,
            max_commit_time_ms=MAX_COMMIT_TIME_MS,
        )
        try:
            result = await callback(MongoCreditTransaction(self.db, session))
        except BaseException:
            if session.in_transaction:
                await session.abort_transaction()
            raise

        await self._commit(session)
        return result

    async def _commit(self, session):
        """
        Commit, retrying while the outcome is unknown. Runs on its own budget:
        the transaction may already be durable, so the lock deadline does not apply.
        """
        deadline = time.monotonic() + self.commit_retry_timeout
        while True:
            try:
                await session.commit_transaction()
                return
            except PyMongoError as e:
                if not e.has_error_label(UNKNOWN_COMMIT_RESULT):
                    raise
                if time.monotonic() >= deadline:
                    logger.error(f"Commit outcome still unknown after {self.commit_retry_timeout}s: {e}")
                    raise CommitOutcomeUnknown() from e
                logger.warning("Commit result unknown, retrying commit")
                await asyncio.sleep(self.retry_backoff)


class MongoAccountStore:
    """Account and ledger reads/writes that do not mutate balances."""

    def __init__(self, db):
        self.db = db

    async def create_account(self, username: str, password_hash: str, role: Role = Role.USER) -> Account:
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            username=username,
            role=role,
            credits=0,
            created_at=now.isoformat(),
        )
        doc = account.model_dump(mode="json")
        doc["password_hash"] = password_hash

        try:
            await self.db[ACCOUNTS_COLLECTION].insert_one(doc)
        except DuplicateKeyError:
            raise UsernameTaken()

        logger.info(f"Created account {account.id} ({username})")
        return account

    async def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        """Full account document including password_hash, for credential checks."""
        return await self.db[ACCOUNTS_COLLECTION].find_one({"username": username}, {"_id": 0})

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        doc = await self.db[ACCOUNTS_COLLECTION].find_one(
            {"id": account_id},
            {"_id": 0, "password_hash": 0, "locked_at": 0},
        )
        return Account(**doc) if doc else None

    async def set_role(self, username: str, role: Role) -> Optional[Account]:
        doc = await self.db[ACCOUNTS_COLLECTION].find_one_and_update(
            {"username": username},
            {"$set": {"role": role.value}},
            projection={"_id": 0, "password_hash": 0, "locked_at": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        logger.info(f"Role of {username} set to {role.value}")
        return Account(**doc)

    async def list_requests(self, target_id: str, limit: int = 50) -> List[CreditRequestRecord]:
        """Most recent ledger entries that changed `target_id`'s balance."""
        cursor = self.db[REQUESTS_COLLECTION].find(
            {"target_id": target_id},
            {"_id": 0},
        ).sort("created_at", -1).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [CreditRequestRecord(**doc) for doc in docs]

    async def stats(self) -> Dict[str, Any]:
        total_accounts = await self.db[ACCOUNTS_COLLECTION].count_documents({})

        pipeline = [
            {"$group": {"_id": "$kind", "count": {"$sum": 1}, "total": {"$sum": "$amount"}}}
        ]
        rows = await self.db[REQUESTS_COLLECTION].aggregate(pipeline).to_list(len(MutationKind))

        by_kind = {kind.value: {"count": 0, "total": 0} for kind in MutationKind}
        for row in rows:
            by_kind[row["_id"]] = {"count": row["count"], "total": row["total"]}

        return {"total_accounts": total_accounts, "requests_by_kind": by_kind}
