"""
Credit API Route Tests

Tests for:
- POST /api/credits/add - Kiosk adds credits
- POST /api/credits/deduct - Merchant deducts credits
- Guard ordering: token, role, rate limit, timestamp, idempotency key, body
- GET /api/credits/ledger and admin endpoints
"""

from datetime import datetime, timedelta, timezone

import pytest

from credit_wallet.guard import WriteRateLimiter
from credit_wallet.models import Role


def fresh_headers(token, key, stamp=None):
    stamp = stamp or datetime.now(timezone.utc)
    return {
        "Authorization": f"Bearer {token}",
        "Idempotency-Key": key,
        "X-Request-Timestamp": stamp.isoformat(),
    }


@pytest.fixture
def tokens(store, authority):
    """Session tokens for one account of each role, plus target 'alice'."""
    store.seed("alice")
    return {
        role: authority.issue_session_token(store.seed(f"{role.value.lower()}1", role=role))
        for role in Role
    }


class TestCreditScenario:
    """End-to-end scenario over HTTP"""

    def test_add_duplicate_deduct_insufficient(self, api, store, tokens):
        kiosk, merchant = tokens[Role.KIOSK], tokens[Role.MERCHANT]
        body = {"amount": 10, "targetUsername": "alice"}

        response = api.post("/api/credits/add", json=body, headers=fresh_headers(kiosk, "k1"))
        assert response.status_code == 200, response.text
        assert response.json() == {"success": True, "credits": 10}

        response = api.post("/api/credits/add", json=body, headers=fresh_headers(kiosk, "k1"))
        assert response.status_code == 409
        assert response.json()["error_code"] == "DUPLICATE_REQUEST"
        assert store.balance("alice") == 10

        response = api.post("/api/credits/deduct", json=body, headers=fresh_headers(merchant, "k2"))
        assert response.status_code == 200
        assert response.json()["credits"] == 0

        response = api.post("/api/credits/deduct", json=body, headers=fresh_headers(merchant, "k3"))
        assert response.status_code == 400
        assert response.json()["error_code"] == "INSUFFICIENT_CREDITS"
        assert "credits" not in response.json()
        assert store.balance("alice") == 0

    def test_add_by_scan_token(self, api, store, authority, tokens):
        qr = api.get("/api/qr", headers={"Authorization": f"Bearer {tokens[Role.USER]}"})
        assert qr.status_code == 200
        scan_token = qr.json()["token"]

        response = api.post(
            "/api/credits/add",
            json={"amount": 30, "userToken": scan_token},
            headers=fresh_headers(tokens[Role.KIOSK], "k1"),
        )

        assert response.status_code == 200, response.text
        assert store.balance("user1") == 30

    def test_admin_may_add_and_deduct(self, api, store, tokens):
        admin = tokens[Role.ADMIN]
        body = {"amount": 20, "targetUsername": "alice"}

        assert api.post("/api/credits/add", json=body, headers=fresh_headers(admin, "a1")).status_code == 200
        assert api.post("/api/credits/deduct", json=body, headers=fresh_headers(admin, "a2")).status_code == 200
        assert store.balance("alice") == 0


class TestAuthorization:

    def test_missing_token(self, api, store):
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "alice"},
            headers={"Idempotency-Key": "k1", "X-Request-Timestamp": datetime.now(timezone.utc).isoformat()},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "MISSING_TOKEN"

    def test_invalid_token(self, api, store):
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "alice"},
            headers=fresh_headers("garbage", "k1"),
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_TOKEN"

    def test_scan_token_cannot_authenticate(self, api, store, authority, tokens):
        scan_token, _ = authority.issue_scan_token("kiosk1")
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "alice"},
            headers=fresh_headers(scan_token, "k1"),
        )
        assert response.status_code == 401

    @pytest.mark.parametrize("role", [Role.USER, Role.MERCHANT])
    def test_add_forbidden(self, api, store, tokens, role):
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "alice"},
            headers=fresh_headers(tokens[role], "k1"),
        )
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"
        assert store.transactions_started == 0

    @pytest.mark.parametrize("role", [Role.USER, Role.KIOSK])
    def test_deduct_forbidden(self, api, store, tokens, role):
        response = api.post(
            "/api/credits/deduct",
            json={"amount": 10, "targetUsername": "alice"},
            headers=fresh_headers(tokens[role], "k1"),
        )
        assert response.status_code == 403

    def test_forbidden_before_validation(self, api, store, tokens):
        response = api.post(
            "/api/credits/add",
            json={"amount": 7},
            headers={"Authorization": f"Bearer {tokens[Role.USER]}"},
        )
        assert response.status_code == 403


class TestRequestGuards:
    """Rejected before any transaction is opened"""

    def test_ten_minute_old_timestamp(self, api, store, tokens):
        stale = datetime.now(timezone.utc) - timedelta(minutes=10)
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "alice"},
            headers=fresh_headers(tokens[Role.KIOSK], "k1", stamp=stale),
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "STALE_REQUEST"
        assert store.transactions_started == 0
        assert store.balance("alice") == 0

    def test_missing_timestamp(self, api, store, tokens):
        headers = fresh_headers(tokens[Role.KIOSK], "k1")
        del headers["X-Request-Timestamp"]

        response = api.post("/api/credits/add", json={"amount": 10, "targetUsername": "alice"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "BAD_TIMESTAMP"
        assert store.transactions_started == 0

    def test_missing_idempotency_key(self, api, store, tokens):
        headers = fresh_headers(tokens[Role.KIOSK], "k1")
        del headers["Idempotency-Key"]

        response = api.post("/api/credits/add", json={"amount": 10, "targetUsername": "alice"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "MISSING_IDEMPOTENCY_KEY"
        assert store.transactions_started == 0

    @pytest.mark.parametrize("body", [
        {"amount": 15, "targetUsername": "alice"},
        {"amount": "10", "targetUsername": "alice"},
        {"amount": 10},
        {"amount": 10, "targetUsername": "alice", "userToken": "x.y.z"},
    ])
    def test_invalid_body(self, api, store, tokens, body):
        response = api.post("/api/credits/add", json=body, headers=fresh_headers(tokens[Role.KIOSK], "k1"))

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert store.transactions_started == 0

    def test_rate_limited(self, api, store, tokens):
        from credit_wallet.guard import get_write_limiter
        from server import app

        limiter = WriteRateLimiter(max_calls=1, window_seconds=60)
        app.dependency_overrides[get_write_limiter] = lambda: limiter

        body = {"amount": 10, "targetUsername": "alice"}
        assert api.post("/api/credits/add", json=body, headers=fresh_headers(tokens[Role.KIOSK], "k1")).status_code == 200

        response = api.post("/api/credits/add", json=body, headers=fresh_headers(tokens[Role.KIOSK], "k2"))
        assert response.status_code == 429
        assert response.json()["error_code"] == "RATE_LIMITED"
        assert "Retry-After" in response.headers
        assert store.balance("alice") == 10


class TestTargetErrors:

    def test_unknown_target(self, api, store, tokens):
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "targetUsername": "ghost"},
            headers=fresh_headers(tokens[Role.KIOSK], "k1"),
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == "TARGET_NOT_FOUND"

    def test_expired_scan_token(self, api, store, authority, tokens):
        scan_token, _ = authority.issue_scan_token("alice", ttl=-10)
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "userToken": scan_token},
            headers=fresh_headers(tokens[Role.KIOSK], "k1"),
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_TARGET"
        assert response.json()["reason"] == "EXPIRED_TOKEN"

    def test_session_token_as_target(self, api, store, tokens):
        response = api.post(
            "/api/credits/add",
            json={"amount": 10, "userToken": tokens[Role.USER]},
            headers=fresh_headers(tokens[Role.KIOSK], "k1"),
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_TARGET"
        assert store.balance("user1") == 0


class TestLedgerEndpoints:

    def test_own_ledger(self, api, store, authority, tokens):
        api.post("/api/credits/add", json={"amount": 20, "targetUsername": "alice"},
                 headers=fresh_headers(tokens[Role.KIOSK], "k1"))
        alice_token = authority.issue_session_token(store.find_doc(username="alice"))

        response = api.get("/api/credits/ledger", headers={"Authorization": f"Bearer {alice_token}"})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["entries"][0]["idempotency_key"] == "k1"
        assert data["entries"][0]["kind"] == "ADD"

    def test_admin_stats(self, api, store, tokens):
        api.post("/api/credits/add", json={"amount": 20, "targetUsername": "alice"},
                 headers=fresh_headers(tokens[Role.KIOSK], "k1"))

        response = api.get("/api/credits/admin/stats", headers={"Authorization": f"Bearer {tokens[Role.ADMIN]}"})

        assert response.status_code == 200
        assert response.json()["requests_by_kind"]["ADD"] == {"count": 1, "total": 20}

    def test_admin_ledger_for_account(self, api, store, tokens):
        api.post("/api/credits/add", json={"amount": 10, "targetUsername": "alice"},
                 headers=fresh_headers(tokens[Role.KIOSK], "k1"))

        response = api.get(
            "/api/credits/admin/ledger",
            params={"username": "alice"},
            headers={"Authorization": f"Bearer {tokens[Role.ADMIN]}"},
        )

        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_admin_endpoints_forbidden_for_kiosk(self, api, store, tokens):
        response = api.get("/api/credits/admin/stats", headers={"Authorization": f"Bearer {tokens[Role.KIOSK]}"})
        assert response.status_code == 403

    def test_admin_sets_role(self, api, store, tokens):
        response = api.post(
            "/api/credits/admin/role",
            json={"username": "alice", "role": "MERCHANT"},
            headers={"Authorization": f"Bearer {tokens[Role.ADMIN]}"},
        )

        assert response.status_code == 200
        assert response.json()["role"] == "MERCHANT"
        assert "password_hash" not in response.json()
        assert store.find_doc(username="alice")["role"] == "MERCHANT"

    def test_admin_sets_role_unknown_account(self, api, store, tokens):
        response = api.post(
            "/api/credits/admin/role",
            json={"username": "ghost", "role": "KIOSK"},
            headers={"Authorization": f"Bearer {tokens[Role.ADMIN]}"},
        )
        assert response.status_code == 404
