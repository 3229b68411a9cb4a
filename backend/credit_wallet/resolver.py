"""
Target Resolver

Turns a TargetSpec (explicit username or presented scan token) into the
target account row, locked inside the caller's transaction.
"""

import logging

from .errors import AuthError, InvalidTarget, TargetNotFound
from .models import LockedAccount, TargetSpec
from .repository import CreditTransaction
from .tokens import TokenAuthority

logger = logging.getLogger(__name__)


class TargetResolver:

    def __init__(self, authority: TokenAuthority):
        self.authority = authority

    async def resolve(self, target: TargetSpec, txn: CreditTransaction) -> LockedAccount:
        if target.scan_token is not None:
            try:
                username = self.authority.verify_scan_token(target.scan_token)
            except AuthError as e:
                logger.info(f"Rejected scan token as target: {e.error_code}")
                raise InvalidTarget(reason=e.error_code) from e
        else:
            username = target.username

        account = await txn.lock_account(username)
        if account is None:
            raise TargetNotFound()
        return account
