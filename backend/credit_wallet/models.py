"""
Credit Wallet Data Models

Pydantic models for API bodies and stored documents, plus the frozen values
that flow from the routes into the ledger service.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, FrozenSet

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from .config import DENOMINATIONS, USERNAME_MIN_LENGTH, USERNAME_MAX_LENGTH


# ==================== ROLES & CAPABILITIES ====================

class Capability(str, Enum):
    ADD_CREDITS = "add_credits"
    DEDUCT_CREDITS = "deduct_credits"
    ISSUE_SCAN_TOKEN = "issue_scan_token"
    ADMINISTER = "administer"


class Role(str, Enum):
    USER = "USER"
    KIOSK = "KIOSK"
    MERCHANT = "MERCHANT"
    ADMIN = "ADMIN"

    def allows(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES[self]


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.USER: frozenset({Capability.ISSUE_SCAN_TOKEN}),
    Role.KIOSK: frozenset({Capability.ADD_CREDITS}),
    Role.MERCHANT: frozenset({Capability.DEDUCT_CREDITS}),
    Role.ADMIN: frozenset({
        Capability.ADD_CREDITS,
        Capability.DEDUCT_CREDITS,
        Capability.ADMINISTER,
    }),
}


class MutationKind(str, Enum):
    ADD = "ADD"
    DEDUCT = "DEDUCT"

    @property
    def capability(self) -> Capability:
        if self is MutationKind.ADD:
            return Capability.ADD_CREDITS
        return Capability.DEDUCT_CREDITS

    def delta(self, amount: int) -> int:
        return amount if self is MutationKind.ADD else -amount


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """Account document without credential material"""
    id: str
    username: str
    role: Role = Role.USER
    credits: int = 0
    created_at: Optional[str] = None


@dataclass(frozen=True)
class LockedAccount:
    """Target row as read under the transaction's exclusive lock"""
    id: str
    username: str
    credits: int


# ==================== TOKEN CLAIMS ====================

@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    role: Role
    username: str
    issued_at: int
    expires_at: int

    def allows(self, capability: Capability) -> bool:
        return self.role.allows(capability)


# ==================== MUTATION MODELS ====================

class CreditChangeRequest(BaseModel):
    """Body of POST /credits/add and /credits/deduct"""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    amount: StrictInt = Field(..., description=f"One of {list(DENOMINATIONS)}")
    target_username: Optional[str] = Field(None, alias="targetUsername", min_length=1)
    user_token: Optional[str] = Field(None, alias="userToken", min_length=1)

    @field_validator("amount")
    @classmethod
    def amount_is_denomination(cls, value: int) -> int:
        if value not in DENOMINATIONS:
            raise ValueError(f"amount must be one of {list(DENOMINATIONS)}")
        return value

    @model_validator(mode="after")
    def exactly_one_target(self):
        if (self.target_username is None) == (self.user_token is None):
            raise ValueError("exactly one of targetUsername or userToken is required")
        return self

    def target(self) -> "TargetSpec":
        return TargetSpec(username=self.target_username, scan_token=self.user_token)


@dataclass(frozen=True)
class TargetSpec:
    """Names the target account either directly or through a scan token"""
    username: Optional[str] = None
    scan_token: Optional[str] = None


@dataclass(frozen=True)
class CreditMutation:
    """A validated mutation ready for the ledger service"""
    kind: MutationKind
    amount: int
    idempotency_key: str
    target: TargetSpec


@dataclass(frozen=True)
class CreditMutationResult:
    kind: MutationKind
    amount: int
    idempotency_key: str
    target_id: str
    credits: int


class CreditRequestRecord(BaseModel):
    """Immutable ledger entry for an accepted mutation"""
    idempotency_key: str
    actor_id: str
    target_id: str
    amount: int
    kind: MutationKind
    created_at: str


class CreditChangeResponse(BaseModel):
    success: bool = True
    credits: int


# ==================== SCAN TOKEN ====================

class ScanTokenResponse(BaseModel):
    token: str
    exp: int


# ==================== ADMIN ====================

class RoleUpdateRequest(BaseModel):
    username: str = Field(..., min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH)
    role: Role


class LedgerResponse(BaseModel):
    entries: List[CreditRequestRecord]
    count: int
