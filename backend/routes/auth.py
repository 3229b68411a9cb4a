"""
Authentication routes
"""
from fastapi import APIRouter, Depends
import logging

from database import get_account_store
from models.schemas import Credentials, TokenResponse
from utils.auth import (
    hash_password,
    check_credential,
    get_current_claims,
    get_token_authority,
    require_capability,
)
from credit_wallet.errors import InvalidCredentials, InvalidToken
from credit_wallet.models import Account, Capability, ScanTokenResponse, SessionClaims
from credit_wallet.repository import MongoAccountStore
from credit_wallet.tokens import TokenAuthority

logger = logging.getLogger(__name__)

auth_router = APIRouter(tags=["Authentication"])


@auth_router.post("/register", response_model=TokenResponse)
async def register(
    body: Credentials,
    accounts: MongoAccountStore = Depends(get_account_store),
    authority: TokenAuthority = Depends(get_token_authority),
):
    """Register a new holder account with zero credits"""
    account = await accounts.create_account(body.username, hash_password(body.password))
    token = authority.issue_session_token(account)
    return TokenResponse(token=token, user=account)


@auth_router.post("/login", response_model=TokenResponse)
async def login(
    body: Credentials,
    accounts: MongoAccountStore = Depends(get_account_store),
    authority: TokenAuthority = Depends(get_token_authority),
):
    """Login user"""
    doc = await accounts.find_by_username(body.username)
    if not check_credential(doc, body.password):
        raise InvalidCredentials()

    account = Account(**doc)
    token = authority.issue_session_token(account)
    return TokenResponse(token=token, user=account)


@auth_router.get("/me", response_model=Account)
async def get_me(
    claims: SessionClaims = Depends(get_current_claims),
    accounts: MongoAccountStore = Depends(get_account_store),
):
    """Get current account, with its live balance"""
    account = await accounts.find_by_id(claims.account_id)
    if account is None:
        # Token outlived its account
        raise InvalidToken()
    return account


@auth_router.get("/qr", response_model=ScanTokenResponse)
async def issue_scan_token(
    claims: SessionClaims = Depends(require_capability(Capability.ISSUE_SCAN_TOKEN)),
    authority: TokenAuthority = Depends(get_token_authority),
):
    """
    Issue a scan token naming the caller, to be shown as a QR code.

    The token only ever names the caller; it carries no role or balance.
    """
    token, exp = authority.issue_scan_token(claims.username)
    logger.info(f"Issued scan token for {claims.username} (exp={exp})")
    return ScanTokenResponse(token=token, exp=exp)
