"""
Credit Ledger Service

Executes one credit mutation (ADD or DEDUCT) as a single atomic, idempotent
transaction:

1. Reject if the idempotency key is already in the request ledger
2. Resolve and lock the target account
3. DEDUCT only: reject if the locked balance is below the amount
4. Apply the delta to the locked row
5. Insert the ledger record
6. Commit

Any failure aborts the whole transaction, so a balance change never exists
without its ledger record and vice versa.

CRITICAL: at most one mutation is ever applied per idempotency key. The
existence check is backed by the storage-level unique index, which also
catches two transactions racing past step 1.
"""

import logging
from datetime import datetime, timezone

from .errors import CreditError, DuplicateRequest, InsufficientCredits, InternalError
from .models import (
    CreditMutation,
    CreditMutationResult,
    CreditRequestRecord,
    MutationKind,
    SessionClaims,
)
from .repository import CreditTransaction
from .resolver import TargetResolver

logger = logging.getLogger(__name__)


class CreditLedgerService:
    """Sole writer of account balances."""

    def __init__(self, store, resolver: TargetResolver):
        self.store = store
        self.resolver = resolver

    async def apply(self, actor: SessionClaims, mutation: CreditMutation) -> CreditMutationResult:
        """
        Apply a validated mutation on behalf of an authorized actor.

        Raises:
            DuplicateRequest: The idempotency key was already used
            TargetNotFound / InvalidTarget: The target could not be resolved
            InsufficientCredits: DEDUCT larger than the locked balance
            TargetBusy: The target row stayed contended past the lock deadline
            InternalError: Storage failure or unexpected exception
        """

        async def execute(txn: CreditTransaction) -> CreditMutationResult:
            if await txn.request_exists(mutation.idempotency_key):
                raise DuplicateRequest()

            target = await self.resolver.resolve(mutation.target, txn)

            if mutation.kind is MutationKind.DEDUCT and target.credits < mutation.amount:
                raise InsufficientCredits()

            credits = await txn.apply_delta(target.id, mutation.kind.delta(mutation.amount))

            await txn.record_request(CreditRequestRecord(
                idempotency_key=mutation.idempotency_key,
                actor_id=actor.account_id,
                target_id=target.id,
                amount=mutation.amount,
                kind=mutation.kind,
                created_at=datetime.now(timezone.utc).isoformat(),
            ))

            return CreditMutationResult(
                kind=mutation.kind,
                amount=mutation.amount,
                idempotency_key=mutation.idempotency_key,
                target_id=target.id,
                credits=credits,
            )

        try:
            result = await self.store.run_in_transaction(execute)
        except DuplicateRequest:
            logger.warning(
                f"Duplicate {mutation.kind.value} request {mutation.idempotency_key} from {actor.username}"
            )
            raise
        except CreditError as e:
            logger.info(
                f"{mutation.kind.value} {mutation.amount} by {actor.username} rejected: {e.error_code}"
            )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error applying {mutation.kind.value} {mutation.idempotency_key}")
            raise InternalError() from e

        logger.info(
            f"{mutation.kind.value} {mutation.amount} credits to account {result.target_id} "
            f"by {actor.username} (key={mutation.idempotency_key}, balance={result.credits})"
        )
        return result
