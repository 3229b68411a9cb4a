"""
Credit Wallet Module
Kiosk-issued, merchant-redeemed credits for registered accounts

This module provides:
- Session tokens (HS256) and scan tokens (RS256) via the token authority
- Target resolution from a username or a presented scan token
- Idempotent, row-locked add/deduct transactions
- Request guards (timestamp skew, idempotency key, write rate limit)

Collections used:
- accounts: User accounts, roles and credit balances
- credit_requests: Append-only log of accepted mutations (idempotency store)
- credits_meta: Init version tracking
"""

__version__ = "1.0.0"
