import logging

import pytest
from jose import JWTError, jwt

from conftest import auth

from dealcross.core.config import get_settings
from dealcross.core.middleware import RequestIdLogFilter, request_id_var
from dealcross.core.rate_limit import NO_REFILL_RETRY_AFTER, TokenBucketLimiter
from dealcross.core.security import (
    UNUSABLE_PASSWORD,
    create_access_token,
    decode_token,
    hash_password,
    password_needs_rehash,
    verify_password,
)

API = "/api/v1"


# ─────────────────────────────────────────────
# tokens / passwords
# ─────────────────────────────────────────────

def test_token_carries_registered_claims():
    token = create_access_token("user-1", {"role": "user", "tier": "growth", "sub": "spoofed"})
    payload = decode_token(token)
    assert payload["sub"] == "user-1"
    assert payload["iss"] == "dealcross"
    assert payload["aud"] == "dealcross-api"
    assert payload["typ"] == "access"
    assert payload["tier"] == "growth"
    assert len(payload["jti"]) == 32


def _forged(**overrides):
    settings = get_settings()
    claims = {"sub": "u", "iss": "dealcross", "aud": "dealcross-api", "typ": "access", "exp": 4102444800}
    claims.update(overrides)
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@pytest.mark.parametrize(
    "overrides",
    [
        {"iss": "someone-else"},
        {"aud": "another-api"},
        {"typ": "refresh"},
        {"exp": 946684800},
    ],
)
def test_decode_rejects_foreign_or_stale_tokens(overrides):
    with pytest.raises(JWTError):
        decode_token(_forged(**overrides))


def test_foreign_issuer_is_unauthenticated_over_http(client):
    r = client.get(f"{API}/escrow", headers={"Authorization": f"Bearer {_forged(iss='someone-else', role='user')}"})
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated"


def test_passwords():
    hashed = hash_password("s3cret")
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("anything", UNUSABLE_PASSWORD)
    assert not verify_password("", hashed)
    with pytest.raises(ValueError):
        hash_password("")
    assert not password_needs_rehash(hashed)
    assert not password_needs_rehash(UNUSABLE_PASSWORD)


# ─────────────────────────────────────────────
# rate limiting
# ─────────────────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_bucket_refills_and_reports_wait():
    clock = FakeClock()
    limiter = TokenBucketLimiter(capacity=2, refill_per_sec=0.5, clock=clock)

    assert limiter.acquire("u1", "escrow_create") == 0
    assert limiter.acquire("u1", "escrow_create") == 0
    assert limiter.acquire("u1", "escrow_create") == 2

    clock.now += 2
    assert limiter.acquire("u1", "escrow_create") == 0


def test_buckets_are_per_user_and_scope():
    limiter = TokenBucketLimiter(capacity=1, refill_per_sec=0, clock=FakeClock())
    assert limiter.acquire("u1", "escrow_create") == 0
    assert limiter.acquire("u1", "escrow_create") == NO_REFILL_RETRY_AFTER
    assert limiter.acquire("u1", "dispute_raise") == 0
    assert limiter.acquire("u2", "escrow_create") == 0


def test_retry_after_follows_the_refill_rate(app, client, buyer, seller):
    from dealcross.core.rate_limit import DISPUTE_RAISE, ESCROW_CREATE

    app.state.rate_limiters[ESCROW_CREATE] = TokenBucketLimiter(capacity=0, refill_per_sec=1)
    app.state.rate_limiters[DISPUTE_RAISE] = TokenBucketLimiter(capacity=5, refill_per_sec=1)

    r = client.post(
        f"{API}/escrow/create",
        headers=auth(buyer),
        json={
            "title": "Desk",
            "description": "Oak desk",
            "seller_email": seller.email,
            "amount": "100",
            "currency": "USD",
        },
    )
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "1"
    assert r.json()["retryable"] is True


# ─────────────────────────────────────────────
# request ids
# ─────────────────────────────────────────────

def test_log_records_pick_up_the_active_request_id():
    record = logging.LogRecord("dealcross", logging.INFO, __file__, 1, "msg", None, None)
    token = request_id_var.set("req-42")
    try:
        RequestIdLogFilter().filter(record)
    finally:
        request_id_var.reset(token)
    assert record.request_id == "req-42"

    explicit = logging.LogRecord("dealcross", logging.INFO, __file__, 1, "msg", None, None)
    explicit.request_id = "given"
    RequestIdLogFilter().filter(explicit)
    assert explicit.request_id == "given"


def test_unsafe_request_ids_are_replaced(client):
    r = client.get(f"{API}/health", headers={"X-Request-Id": "bad id <script>"})
    rid = r.headers["X-Request-Id"]
    assert rid != "bad id <script>"
    assert len(rid) == 36
    assert r.json()["data"]["request_id"] == rid
