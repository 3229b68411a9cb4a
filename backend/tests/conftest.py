import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from credit_wallet.tokens import TokenAuthority, generate_ephemeral_keys
from fakes import InMemoryStore

TEST_SESSION_SECRET = "test-session-secret-0123456789abcdef"


@pytest.fixture(scope="session")
def scan_keys():
    """One RSA keypair for the whole run; generation is slow."""
    return generate_ephemeral_keys()


@pytest.fixture(scope="session")
def other_scan_keys():
    return generate_ephemeral_keys()


@pytest.fixture
def authority(scan_keys):
    return TokenAuthority(TEST_SESSION_SECRET, scan_keys)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def claims_for(authority):
    """Build verified SessionClaims for an account, as a route would see them."""
    def build(account):
        return authority.verify_session_token(authority.issue_session_token(account))
    return build


@pytest.fixture
def write_limiter():
    from credit_wallet.guard import WriteRateLimiter
    return WriteRateLimiter(max_calls=1000, window_seconds=60)


@pytest.fixture
def api(store, authority, write_limiter):
    """TestClient with the app's stores and token authority swapped for in-memory ones."""
    from fastapi.testclient import TestClient

    from credit_wallet.guard import get_write_limiter
    from database import get_account_store, get_credit_store
    from server import app
    from utils.auth import get_token_authority

    app.dependency_overrides[get_credit_store] = lambda: store
    app.dependency_overrides[get_account_store] = lambda: store
    app.dependency_overrides[get_token_authority] = lambda: authority
    app.dependency_overrides[get_write_limiter] = lambda: write_limiter

    yield TestClient(app)

    app.dependency_overrides.clear()
