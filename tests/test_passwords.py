from __future__ import annotations

import pytest

from account_lifecycle.domain.errors import InvalidInput
from account_lifecycle.security.passwords import PasswordHasher


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


def test_hash_verifies_against_original_password(hasher):
    password_hash = hasher.hash("correct horse")
    assert password_hash != "correct horse"
    assert hasher.verify("correct horse", password_hash)
    assert not hasher.verify("correct horsE", password_hash)


def test_hash_is_salted(hasher):
    assert hasher.hash("same password") != hasher.hash("same password")


def test_empty_password_is_rejected(hasher):
    with pytest.raises(InvalidInput):
        hasher.hash("")


def test_unparseable_stored_hash_counts_as_mismatch(hasher):
    assert hasher.verify("whatever1", "not-a-bcrypt-hash") is False


def test_passwords_over_bcrypt_limit_are_rejected(hasher):
    with pytest.raises(InvalidInput):
        hasher.hash("a" * 72 + "first-secret")
    # multi-byte characters count by encoded length
    with pytest.raises(InvalidInput):
        hasher.hash("\u00e9" * 37)


def test_password_at_bcrypt_limit_is_accepted(hasher):
    password = "a" * 72
    assert hasher.verify(password, hasher.hash(password))


def test_longer_input_never_matches_a_stored_prefix(hasher):
    password_hash = hasher.hash("a" * 72)
    assert not hasher.verify("a" * 72 + "completely-different", password_hash)


def test_dummy_verify_ignores_empty_input(hasher):
    hasher.dummy_verify("")
    hasher.dummy_verify("anything")
