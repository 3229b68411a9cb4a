"""
Authentication utilities
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import bcrypt

from credit_wallet.errors import AuthorizationError, MissingToken
from credit_wallet.models import Capability, SessionClaims
from credit_wallet.tokens import TokenAuthority

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def check_credential(account: Optional[dict], presented: str) -> bool:
    """Check a presented password against an account document's stored hash"""
    if not account or not account.get("password_hash"):
        return False
    return verify_password(presented, account["password_hash"])


def get_token_authority(request: Request) -> TokenAuthority:
    return request.app.state.token_authority


async def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    authority: TokenAuthority = Depends(get_token_authority),
) -> SessionClaims:
    """Verify the session token and return its claims (no database lookup)"""
    if credentials is None or not credentials.credentials:
        raise MissingToken()
    return authority.verify_session_token(credentials.credentials)


def require_capability(capability: Capability):
    """Dependency factory: the caller's role must grant `capability`"""
    async def check(claims: SessionClaims = Depends(get_current_claims)) -> SessionClaims:
        if not claims.allows(capability):
            raise AuthorizationError()
        return claims
    return check
