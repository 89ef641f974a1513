"""
Hashing and random token primitives.

CredentialHasher produces salted HMACs (or bcrypt hashes) for client secrets
and passwords, and unsalted digests for lookup columns such as token and code
hashes, where the row has to be found before any salt could be known.
"""

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Union

import bcrypt
from loguru import logger

# Everything outside this set is illegal in an HTTP header value
_HEADER_UNSAFE = re.compile(r'[^A-Za-z0-9()<>@,;:\\/"\[\]?={}]')

BCRYPT = "bcrypt"
NO_SALT = False


def random_string(length: int) -> str:
    """Random base64 characters from a CSPRNG, truncated to length"""
    return base64.b64encode(secrets.token_bytes(length)).decode("ascii")[:length]


def random_alphanum_string(length: int) -> str:
    """Random lowercase hex string of the given length"""
    return secrets.token_hex(length)[:length]


def make_header_safe(value: str) -> str:
    """Replace every character that may not appear in a header with a random digit"""
    return _HEADER_UNSAFE.sub(lambda _: str(secrets.randbelow(10)), value)


def random_header_safe_string(length: int) -> str:
    return make_header_safe(random_string(length))


@dataclass(frozen=True)
class HashResult:
    hash: str
    salt: Union[str, bool]
    algorithm: str


class CredentialHasher:
    """
    hash(data, salt, algorithm) with three salt modes:

    - None: generate a fresh salt (storing a new secret)
    - NO_SALT (False): plain digest (lookup hashes)
    - a string: reuse the stored salt (verification)

    The algorithm defaults to the configured one. Hashing with an explicit
    older algorithm lets callers verify legacy rows and then upgrade them.
    """

    def __init__(self, default_algorithm: str = "sha256", salt_length: int = 16, bcrypt_rounds: int = 12):
        self.default_algorithm = default_algorithm
        self.salt_length = salt_length
        self.bcrypt_rounds = bcrypt_rounds
        if default_algorithm != BCRYPT:
            # Fail at startup rather than on the first login
            hashlib.new(default_algorithm)

    def hash(self, data: str, salt: Optional[Union[str, bool]] = None, algorithm: str = None) -> HashResult:
        algorithm = algorithm or self.default_algorithm
        data_bytes = data.encode("utf-8")

        if algorithm == BCRYPT:
            if salt is NO_SALT:
                raise ValueError("bcrypt hashes are always salted")
            if salt is None:
                salt = bcrypt.gensalt(rounds=self.bcrypt_rounds).decode("ascii")
            elif not self.salt_fits(salt, BCRYPT):
                raise ValueError("salt is not a bcrypt salt")
            # bcrypt only looks at the first 72 bytes
            hashed = bcrypt.hashpw(data_bytes[:72], salt.encode("ascii"))
            return HashResult(hash=hashed.decode("ascii"), salt=salt, algorithm=algorithm)

        if salt is None:
            salt = random_string(self.salt_length)

        if salt is NO_SALT:
            digest = hashlib.new(algorithm, data_bytes).hexdigest()
        else:
            digest = hmac.new(salt.encode("utf-8"), data_bytes, algorithm).hexdigest()

        return HashResult(hash=digest, salt=salt, algorithm=algorithm)

    def lookup_hash(self, data: str) -> str:
        """Unsalted digest under the default algorithm, for indexed lookups"""
        algorithm = self.default_algorithm if self.default_algorithm != BCRYPT else "sha256"
        return self.hash(data, NO_SALT, algorithm).hash

    def verify(self, data: str, stored_hash: Optional[str], salt: Optional[str], algorithm: Optional[str]) -> bool:
        """Recompute with the stored salt and algorithm; never raises"""
        if not stored_hash or not salt or not algorithm:
            return False
        try:
            candidate = self.hash(data, salt, algorithm).hash
        except (ValueError, TypeError) as e:
            logger.warning(f"[HASH] Cannot verify against stored algorithm {algorithm!r}: {e}")
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), stored_hash.encode("utf-8"))

    def needs_upgrade(self, algorithm: Optional[str]) -> bool:
        return algorithm != self.default_algorithm

    def upgrade(self, data: str, salt: Optional[str]) -> HashResult:
        """Re-hash under the default algorithm, keeping the salt when it still fits"""
        if salt and self.salt_fits(salt, self.default_algorithm):
            return self.hash(data, salt)
        return self.hash(data)

    @staticmethod
    def salt_fits(salt: str, algorithm: str) -> bool:
        is_bcrypt_salt = isinstance(salt, str) and salt.startswith("$2") and len(salt) == 29
        return is_bcrypt_salt if algorithm == BCRYPT else isinstance(salt, str)
