import hashlib
import hmac
import re

import pytest

from auth.crypto import (
    BCRYPT,
    NO_SALT,
    CredentialHasher,
    make_header_safe,
    random_alphanum_string,
    random_header_safe_string,
    random_string,
)

HEADER_SAFE = re.compile(r'^[A-Za-z0-9()<>@,;:\\/"\[\]?={}]*$')


def test_random_string_has_requested_length():
    for length in (1, 16, 33, 64):
        assert len(random_string(length)) == length


def test_random_strings_differ():
    assert random_string(32) != random_string(32)


def test_random_alphanum_string_is_hex():
    value = random_alphanum_string(20)
    assert len(value) == 20
    assert re.fullmatch(r"[0-9a-f]+", value)


def test_make_header_safe_replaces_illegal_characters_with_digits():
    safe = make_header_safe("a+b c=d/e")
    assert safe[0] == "a" and safe[2] == "b"
    assert safe[1].isdigit()
    assert safe[3].isdigit()
    assert safe[4:] == "c=d/e"


def test_random_header_safe_string_alphabet():
    for _ in range(20):
        value = random_header_safe_string(64)
        assert len(value) == 64
        assert HEADER_SAFE.match(value)


def test_hash_without_salt_generates_one():
    hasher = CredentialHasher("sha256", salt_length=12)
    result = hasher.hash("secret")

    assert len(result.salt) == 12
    assert result.algorithm == "sha256"
    expected = hmac.new(result.salt.encode(), b"secret", "sha256").hexdigest()
    assert result.hash == expected


def test_hash_with_no_salt_is_plain_digest():
    hasher = CredentialHasher("sha256")
    result = hasher.hash("token", NO_SALT)

    assert result.salt is NO_SALT
    assert result.hash == hashlib.sha256(b"token").hexdigest()
    assert hasher.lookup_hash("token") == result.hash


def test_hash_with_given_salt_is_reproducible():
    hasher = CredentialHasher("sha256")
    first = hasher.hash("secret", "pepper")
    second = hasher.hash("secret", "pepper")
    assert first.hash == second.hash
    assert hasher.hash("secret", "other").hash != first.hash


def test_explicit_algorithm_overrides_default():
    hasher = CredentialHasher("sha256")
    result = hasher.hash("secret", "salt", "sha512")
    assert result.algorithm == "sha512"
    assert len(result.hash) == 128


def test_verify():
    hasher = CredentialHasher("sha256")
    stored = hasher.hash("secret")

    assert hasher.verify("secret", stored.hash, stored.salt, stored.algorithm)
    assert not hasher.verify("wrong", stored.hash, stored.salt, stored.algorithm)
    assert not hasher.verify("secret", None, stored.salt, stored.algorithm)
    assert not hasher.verify("secret", stored.hash, None, stored.algorithm)


def test_verify_with_unknown_stored_algorithm_returns_false():
    hasher = CredentialHasher("sha256")
    assert not hasher.verify("secret", "abc", "salt", "no-such-algorithm")


def test_unknown_default_algorithm_fails_at_construction():
    with pytest.raises(ValueError):
        CredentialHasher("no-such-algorithm")


def test_bcrypt_round_trip():
    hasher = CredentialHasher(BCRYPT, bcrypt_rounds=4)
    stored = hasher.hash("correct horse")

    assert stored.algorithm == BCRYPT
    assert stored.hash.startswith("$2")
    assert hasher.verify("correct horse", stored.hash, stored.salt, stored.algorithm)
    assert not hasher.verify("battery staple", stored.hash, stored.salt, stored.algorithm)


def test_bcrypt_refuses_unsalted_hash():
    hasher = CredentialHasher(BCRYPT, bcrypt_rounds=4)
    with pytest.raises(ValueError):
        hasher.hash("value", NO_SALT)


def test_lookup_hash_never_uses_bcrypt():
    hasher = CredentialHasher(BCRYPT, bcrypt_rounds=4)
    assert hasher.lookup_hash("token") == hashlib.sha256(b"token").hexdigest()


def test_upgrade_keeps_fitting_salt():
    old = CredentialHasher("sha256").hash("secret", "kept-salt")
    new_hasher = CredentialHasher("sha512")

    assert new_hasher.needs_upgrade(old.algorithm)
    upgraded = new_hasher.upgrade("secret", old.salt)
    assert upgraded.salt == "kept-salt"
    assert upgraded.algorithm == "sha512"
    assert not new_hasher.needs_upgrade(upgraded.algorithm)


def test_upgrade_to_bcrypt_replaces_hmac_salt():
    old = CredentialHasher("sha256").hash("secret")
    bcrypt_hasher = CredentialHasher(BCRYPT, bcrypt_rounds=4)

    upgraded = bcrypt_hasher.upgrade("secret", old.salt)
    assert upgraded.algorithm == BCRYPT
    assert upgraded.salt != old.salt
    assert bcrypt_hasher.verify("secret", upgraded.hash, upgraded.salt, upgraded.algorithm)
