"""
In-memory stand-ins for MongoCreditStore / MongoAccountStore.

InMemoryStore runs credit transactions with the same guarantees the Mongo
store gives: a per-account exclusive lock held until the transaction ends,
all-or-nothing rollback, and a unique idempotency key enforced at insert.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from credit_wallet.errors import DuplicateRequest, InsufficientCredits, TargetBusy, UsernameTaken
from credit_wallet.models import Account, CreditRequestRecord, LockedAccount, MutationKind, Role


class InMemoryTransaction:

    def __init__(self, store: "InMemoryStore"):
        self.store = store
        self._held: List[str] = []
        self._undo: List = []

    async def request_exists(self, idempotency_key: str) -> bool:
        return idempotency_key in self.store.requests

    async def lock_account(self, username: str) -> Optional[LockedAccount]:
        doc = self.store.find_doc(username=username)
        if doc is None:
            return None

        account_id = doc["id"]
        if account_id not in self._held:
            lock = self.store.lock_for(account_id)
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.store.lock_timeout)
            except asyncio.TimeoutError:
                raise TargetBusy()
            self._held.append(account_id)

        return LockedAccount(id=account_id, username=doc["username"], credits=doc["credits"])

    async def apply_delta(self, account_id: str, delta: int) -> int:
        doc = self.store.accounts[account_id]
        current = doc["credits"]
        # Yield between read and write so unlocked writers would interleave
        await asyncio.sleep(0)
        if current + delta < 0:
            raise InsufficientCredits()
        self._undo.append(("credits", account_id, current))
        doc["credits"] = current + delta
        return doc["credits"]

    async def record_request(self, record: CreditRequestRecord) -> None:
        if record.idempotency_key in self.store.requests:
            raise DuplicateRequest()
        self.store.requests[record.idempotency_key] = record
        self._undo.append(("request", record.idempotency_key, None))

    def rollback(self):
        for kind, key, value in reversed(self._undo):
            if kind == "credits":
                self.store.accounts[key]["credits"] = value
            else:
                self.store.requests.pop(key, None)
        self._undo.clear()

    def release(self):
        for account_id in self._held:
            self.store.lock_for(account_id).release()
        self._held.clear()


class InMemoryStore:
    """Credit store and account store over plain dicts."""

    def __init__(self, lock_timeout: float = 1.0):
        self.lock_timeout = lock_timeout
        self.accounts: Dict[str, dict] = {}
        self.requests: Dict[str, CreditRequestRecord] = {}
        self.transactions_started = 0
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, account_id: str) -> asyncio.Lock:
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    def find_doc(self, username: Optional[str] = None, account_id: Optional[str] = None) -> Optional[dict]:
        if account_id is not None:
            return self.accounts.get(account_id)
        for doc in self.accounts.values():
            if doc["username"] == username:
                return doc
        return None

    def seed(self, username: str, role: Role = Role.USER, credits: int = 0,
             password_hash: str = "") -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            username=username,
            role=role,
            credits=credits,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        doc = account.model_dump(mode="json")
        doc["password_hash"] = password_hash
        self.accounts[account.id] = doc
        return account

    def balance(self, username: str) -> int:
        return self.find_doc(username=username)["credits"]

    # ==================== CREDIT STORE ====================

    async def run_in_transaction(self, callback):
        self.transactions_started += 1
        txn = InMemoryTransaction(self)
        try:
            result = await callback(txn)
        except BaseException:
            txn.rollback()
            raise
        finally:
            txn.release()
        return result

    # ==================== ACCOUNT STORE ====================

    async def create_account(self, username: str, password_hash: str, role: Role = Role.USER) -> Account:
        if self.find_doc(username=username) is not None:
            raise UsernameTaken()
        return self.seed(username, role=role, password_hash=password_hash)

    async def find_by_username(self, username: str) -> Optional[dict]:
        doc = self.find_doc(username=username)
        return dict(doc) if doc else None

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        doc = self.find_doc(account_id=account_id)
        return Account(**doc) if doc else None

    async def set_role(self, username: str, role: Role) -> Optional[Account]:
        doc = self.find_doc(username=username)
        if doc is None:
            return None
        doc["role"] = role.value
        return Account(**doc)

    async def list_requests(self, target_id: str, limit: int = 50) -> List[CreditRequestRecord]:
        entries = [r for r in self.requests.values() if r.target_id == target_id]
        entries.sort(key=lambda r: r.created_at, reverse=True)
        return entries[:limit]

    async def stats(self) -> dict:
        by_kind = {kind.value: {"count": 0, "total": 0} for kind in MutationKind}
        for record in self.requests.values():
            by_kind[record.kind.value]["count"] += 1
            by_kind[record.kind.value]["total"] += record.amount
        return {"total_accounts": len(self.accounts), "requests_by_kind": by_kind}
