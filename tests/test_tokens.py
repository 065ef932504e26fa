from __future__ import annotations

import jwt
import pytest

from account_lifecycle.config import TokenSettings
from account_lifecycle.domain.errors import BadSignature, MalformedToken, TokenExpired
from account_lifecycle.security.tokens import TokenService, hash_code


def test_issue_then_verify_returns_claims(tokens, clock):
    issued = tokens.issue("acc-1", 3, "active")
    assert issued.expires_in == 900

    claims = tokens.verify(issued.token)
    assert claims.account_id == "acc-1"
    assert claims.status_marker == 3
    assert claims.status == "active"
    assert claims.issued_at == clock().replace(microsecond=0)


def test_token_expires_exactly_at_ttl(tokens, clock):
    issued = tokens.issue("acc-1", 0)
    clock.advance(seconds=899)
    tokens.verify(issued.token)
    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        tokens.verify(issued.token)


def test_token_signed_with_other_secret_is_rejected(settings, clock):
    other = TokenService(
        TokenSettings(secret="other", issuer=settings.jwt_issuer, ttl_seconds=60), clock=clock
    )
    token = other.issue("acc-1", 0).token
    with pytest.raises(BadSignature):
        TokenService(settings.token_settings(), clock=clock).verify(token)


def test_token_from_other_issuer_is_rejected(settings, clock, tokens):
    foreign = TokenService(
        TokenSettings(secret=settings.jwt_secret, issuer="someone-else", ttl_seconds=60),
        clock=clock,
    )
    with pytest.raises(BadSignature):
        tokens.verify(foreign.issue("acc-1", 0).token)


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_garbage_tokens_are_malformed(tokens, token):
    with pytest.raises(MalformedToken):
        tokens.verify(token)


def test_token_missing_version_claim_is_malformed(settings, tokens, clock):
    now = int(clock().timestamp())
    token = jwt.encode(
        {"iss": settings.jwt_issuer, "sub": "acc-1", "iat": now, "exp": now + 60},
        settings.jwt_secret,
        algorithm="HS256",
    )
    with pytest.raises(MalformedToken):
        tokens.verify(token)


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenService(TokenSettings(secret="", issuer="x", ttl_seconds=60))


def test_codes_are_unique_and_stored_as_digests(tokens, clock):
    codes = {tokens.generate_code() for _ in range(200)}
    assert len(codes) == 200

    issued = tokens.new_code(3600)
    assert issued.pending.code_hash == hash_code(issued.code)
    assert issued.code not in issued.pending.code_hash
    assert (issued.pending.expires_at - clock()).total_seconds() == 3600



def test_issued_code_expires_at_its_deadline(tokens, clock):
    issued = tokens.new_code(60)
    clock.advance(seconds=59, microseconds=999999)
    assert not issued.pending.is_expired(tokens.now())
    clock.advance(microseconds=1)
    assert issued.pending.is_expired(tokens.now())
