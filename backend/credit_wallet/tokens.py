"""
Token Authority

Issues and verifies the two token classes:
- Session tokens: HS256 with JWT_SECRET, short TTL, carry account id + role + username
- Scan tokens: RS256 with the scan keypair, long TTL, carry only the username

The classes are kept apart by key, algorithm and the "typ" claim, so neither
can be presented where the other is expected.

Scan keys are either provided (PEM in the environment) or ephemeral. Ephemeral
keys are generated at startup and every restart invalidates all outstanding
scan tokens, so that mode is announced loudly and refused in production.
"""

import logging
import time
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import config
from .errors import ExpiredToken, InvalidToken, KeyConfigurationError, WrongTokenType
from .models import Account, Role, SessionClaims

logger = logging.getLogger(__name__)

KEY_MODE_PROVIDED = "provided"
KEY_MODE_EPHEMERAL = "ephemeral"


class EphemeralKeyWarning(UserWarning):
    """Scan tokens are signed with keys that will not survive a restart."""


@dataclass(frozen=True)
class ScanKeyPair:
    private_pem: str
    public_pem: str
    mode: str


def generate_ephemeral_keys() -> ScanKeyPair:
    """Generate an RSA-2048 keypair held only in memory."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return ScanKeyPair(private_pem=private_pem, public_pem=public_pem, mode=KEY_MODE_EPHEMERAL)


def announce_ephemeral_keys():
    """Make ephemeral key mode impossible to miss in logs and warning filters."""
    banner = (
        "\n" + "=" * 60 + "\n"
        "EPHEMERAL SCAN TOKEN KEYS IN USE\n"
        + "=" * 60 + "\n"
        "Scan tokens are signed with a keypair generated at startup.\n"
        "Every restart invalidates ALL previously issued scan tokens.\n"
        "Set SCAN_TOKEN_PRIVATE_KEY / SCAN_TOKEN_PUBLIC_KEY and\n"
        "SCAN_TOKEN_KEY_MODE=provided for any durable deployment.\n"
        + "=" * 60
    )
    logger.warning(banner)
    warnings.warn(
        "Scan tokens are signed with ephemeral keys; they will not survive a restart",
        EphemeralKeyWarning,
        stacklevel=2,
    )


def _normalize_pem(value: str) -> str:
    # Keys pasted into single-line env vars often carry literal "\n"
    return value.replace("\\n", "\n").strip()


def load_scan_keys(
    mode: Optional[str] = None,
    private_pem: Optional[str] = None,
    public_pem: Optional[str] = None,
    production: bool = False,
) -> ScanKeyPair:
    """
    Resolve the scan token keypair from an explicit key mode.

    Args:
        mode: "provided", "ephemeral", or empty to pick from the environment
        private_pem: PKCS8 private key (PEM)
        public_pem: SubjectPublicKeyInfo public key (PEM)
        production: Whether the service runs in production

    Raises:
        KeyConfigurationError: mode is unknown, provided keys are missing,
            or ephemeral keys were requested in production
    """
    private_pem = _normalize_pem(private_pem or "")
    public_pem = _normalize_pem(public_pem or "")
    mode = (mode or "").strip().lower()

    if not mode:
        has_keys = bool(private_pem or public_pem)
        mode = KEY_MODE_PROVIDED if (has_keys or production) else KEY_MODE_EPHEMERAL

    if mode == KEY_MODE_PROVIDED:
        if not (private_pem and public_pem):
            raise KeyConfigurationError(
                "SCAN_TOKEN_KEY_MODE=provided requires both SCAN_TOKEN_PRIVATE_KEY "
                "and SCAN_TOKEN_PUBLIC_KEY"
            )
        return ScanKeyPair(private_pem=private_pem, public_pem=public_pem, mode=KEY_MODE_PROVIDED)

    if mode == KEY_MODE_EPHEMERAL:
        if production:
            raise KeyConfigurationError(
                "Ephemeral scan token keys are refused in production; provide a keypair"
            )
        keys = generate_ephemeral_keys()
        announce_ephemeral_keys()
        return keys

    raise KeyConfigurationError(f"Unknown SCAN_TOKEN_KEY_MODE '{mode}'")


def resolve_session_secret(secret: Optional[str], production: bool = False) -> str:
    if secret:
        return secret
    if production:
        raise KeyConfigurationError("JWT_SECRET must be set in production")
    logger.warning("JWT_SECRET not set - using the development session secret")
    return config.DEV_JWT_SECRET


class TokenAuthority:
    """Mints and verifies session tokens and scan tokens."""

    def __init__(
        self,
        session_secret: str,
        scan_keys: ScanKeyPair,
        session_ttl: int = config.SESSION_TOKEN_TTL_SECONDS,
        scan_ttl: int = config.SCAN_TOKEN_TTL_SECONDS,
    ):
        self._session_secret = session_secret
        self._scan_keys = scan_keys
        self.session_ttl = session_ttl
        self.scan_ttl = scan_ttl

    @classmethod
    def from_environment(cls, production: bool = False) -> "TokenAuthority":
        secret = resolve_session_secret(config.JWT_SECRET, production)
        keys = load_scan_keys(
            mode=config.SCAN_TOKEN_KEY_MODE,
            private_pem=config.SCAN_TOKEN_PRIVATE_KEY,
            public_pem=config.SCAN_TOKEN_PUBLIC_KEY,
            production=production,
        )
        return cls(secret, keys)

    @property
    def scan_key_mode(self) -> str:
        return self._scan_keys.mode

    # ==================== SESSION TOKENS ====================

    def issue_session_token(self, account: Union[Account, dict]) -> str:
        if isinstance(account, dict):
            account = Account(**account)
        now = int(time.time())
        payload = {
            "sub": account.id,
            "role": Role(account.role).value,
            "username": account.username,
            "typ": config.SESSION_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.session_ttl,
        }
        return jwt.encode(payload, self._session_secret, algorithm=config.SESSION_TOKEN_ALGORITHM)

    def verify_session_token(self, token: str) -> SessionClaims:
        """
        Verify signature, expiry and token type. Stateless: the account store
        is not consulted, role and identity are trusted for the token's TTL.
        """
        payload = self._decode(
            token,
            self._session_secret,
            config.SESSION_TOKEN_ALGORITHM,
            config.SESSION_TOKEN_TYPE,
            required=["sub", "role", "username", "typ", "iat", "exp"],
        )
        try:
            role = Role(payload["role"])
        except ValueError:
            raise InvalidToken()
        return SessionClaims(
            account_id=payload["sub"],
            role=role,
            username=payload["username"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )

    # ==================== SCAN TOKENS ====================

    def issue_scan_token(self, username: str, ttl: Optional[int] = None) -> Tuple[str, int]:
        """Sign a scan token naming `username`. Returns (token, expiry epoch seconds)."""
        now = int(time.time())
        expires_at = now + (self.scan_ttl if ttl is None else ttl)
        payload = {
            "sub": username,
            "typ": config.SCAN_TOKEN_TYPE,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._scan_keys.private_pem, algorithm=config.SCAN_TOKEN_ALGORITHM)
        return token, expires_at

    def verify_scan_token(self, token: str) -> str:
        payload = self._decode(
            token,
            self._scan_keys.public_pem,
            config.SCAN_TOKEN_ALGORITHM,
            config.SCAN_TOKEN_TYPE,
            required=["sub", "typ", "iat", "exp"],
        )
        return payload["sub"]

    # ==================== HELPERS ====================

    @staticmethod
    def _decode(token: str, key: str, algorithm: str, expected_type: str, required: list) -> dict:
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                options={"require": required},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredToken()
        except jwt.InvalidTokenError:
            raise InvalidToken()

        if payload.get("typ") != expected_type:
            raise WrongTokenType()
        return payload
