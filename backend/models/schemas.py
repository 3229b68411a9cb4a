"""
Pydantic models/schemas for the application
"""
from pydantic import BaseModel, Field

from credit_wallet.config import (
    USERNAME_MIN_LENGTH,
    USERNAME_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
    PASSWORD_MAX_LENGTH,
)
from credit_wallet.models import Account


# ==================== AUTH MODELS ====================

class Credentials(BaseModel):
    username: str = Field(..., min_length=USERNAME_MIN_LENGTH, max_length=USERNAME_MAX_LENGTH)
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

class TokenResponse(BaseModel):
    success: bool = True
    token: str
    user: Account
