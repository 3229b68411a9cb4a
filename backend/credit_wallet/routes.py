"""
Credit Wallet API Routes

Endpoints:
- POST /api/credits/add - Kiosk adds credits (KIOSK, ADMIN)
- POST /api/credits/deduct - Merchant deducts credits, never below zero (MERCHANT, ADMIN)
- GET /api/credits/ledger - Accepted requests that changed the caller's balance
- GET /api/credits/admin/stats - Aggregate request statistics (ADMIN)
- POST /api/credits/admin/role - Assign an account's role (ADMIN)
- GET /api/credits/admin/ledger - Ledger of any account (ADMIN)

Mutation endpoints run the guards in order: session token, role capability,
write rate limit, request timestamp, Idempotency-Key, body schema.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from database import get_account_store, get_credit_store
from utils.auth import get_current_claims, get_token_authority, require_capability
from credit_wallet.errors import TargetNotFound
from credit_wallet.guard import limit_writes, require_fresh_timestamp, require_idempotency_key
from credit_wallet.ledger_service import CreditLedgerService
from credit_wallet.models import (
    Account,
    Capability,
    CreditChangeRequest,
    CreditChangeResponse,
    CreditMutation,
    LedgerResponse,
    MutationKind,
    RoleUpdateRequest,
    SessionClaims,
)
from credit_wallet.repository import MongoAccountStore
from credit_wallet.resolver import TargetResolver
from credit_wallet.tokens import TokenAuthority

logger = logging.getLogger(__name__)

credits_router = APIRouter(prefix="/credits", tags=["Credits"])


def get_ledger_service(
    store=Depends(get_credit_store),
    authority: TokenAuthority = Depends(get_token_authority),
) -> CreditLedgerService:
    return CreditLedgerService(store, TargetResolver(authority))


@dataclass(frozen=True)
class GuardedWrite:
    actor: SessionClaims
    idempotency_key: str


def mutation_guard(kind: MutationKind):
    """Dependency factory running every pre-transaction check for a mutation of `kind`."""
    async def guard(
        actor: SessionClaims = Depends(require_capability(kind.capability)),
        throttled: None = Depends(limit_writes),
        timestamp: datetime = Depends(require_fresh_timestamp),
        idempotency_key: str = Depends(require_idempotency_key),
    ) -> GuardedWrite:
        return GuardedWrite(actor=actor, idempotency_key=idempotency_key)
    return guard


async def _apply(kind: MutationKind, write: GuardedWrite, body: CreditChangeRequest,
                 service: CreditLedgerService) -> CreditChangeResponse:
    mutation = CreditMutation(
        kind=kind,
        amount=body.amount,
        idempotency_key=write.idempotency_key,
        target=body.target(),
    )
    result = await service.apply(write.actor, mutation)
    return CreditChangeResponse(credits=result.credits)


# ==================== MUTATION ENDPOINTS ====================

@credits_router.post("/add", response_model=CreditChangeResponse)
async def add_credits(
    body: CreditChangeRequest,
    write: GuardedWrite = Depends(mutation_guard(MutationKind.ADD)),
    service: CreditLedgerService = Depends(get_ledger_service),
):
    """Add credits to the target named by targetUsername or userToken."""
    return await _apply(MutationKind.ADD, write, body, service)


@credits_router.post("/deduct", response_model=CreditChangeResponse)
async def deduct_credits(
    body: CreditChangeRequest,
    write: GuardedWrite = Depends(mutation_guard(MutationKind.DEDUCT)),
    service: CreditLedgerService = Depends(get_ledger_service),
):
    """
    Deduct credits from the target.

    Fails with INSUFFICIENT_CREDITS rather than clamping; the balance is
    never partially deducted.
    """
    return await _apply(MutationKind.DEDUCT, write, body, service)


# ==================== LEDGER ====================

@credits_router.get("/ledger", response_model=LedgerResponse)
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    claims: SessionClaims = Depends(get_current_claims),
    accounts: MongoAccountStore = Depends(get_account_store),
):
    """Accepted requests that changed the caller's balance, newest first."""
    entries = await accounts.list_requests(claims.account_id, limit)
    return LedgerResponse(entries=entries, count=len(entries))


# ==================== ADMIN ENDPOINTS ====================

@credits_router.get("/admin/stats")
async def get_credit_stats(
    admin: SessionClaims = Depends(require_capability(Capability.ADMINISTER)),
    accounts: MongoAccountStore = Depends(get_account_store),
):
    """Aggregate request statistics (admin only)."""
    return await accounts.stats()


@credits_router.get("/admin/ledger", response_model=LedgerResponse)
async def get_account_ledger(
    username: str = Query(..., description="Account whose ledger to read"),
    limit: int = Query(50, ge=1, le=200),
    admin: SessionClaims = Depends(require_capability(Capability.ADMINISTER)),
    accounts: MongoAccountStore = Depends(get_account_store),
):
    """Ledger of any account (admin only)."""
    doc = await accounts.find_by_username(username)
    if not doc:
        raise TargetNotFound()
    entries = await accounts.list_requests(doc["id"], limit)
    return LedgerResponse(entries=entries, count=len(entries))


@credits_router.post("/admin/role", response_model=Account)
async def set_account_role(
    body: RoleUpdateRequest,
    admin: SessionClaims = Depends(require_capability(Capability.ADMINISTER)),
    accounts: MongoAccountStore = Depends(get_account_store),
):
    """
    Assign a role (admin only).

    Outstanding session tokens keep their old role until they expire.
    """
    account = await accounts.set_role(body.username, body.role)
    if account is None:
        raise TargetNotFound()
    logger.info(f"{admin.username} set role of {body.username} to {body.role.value}")
    return account
