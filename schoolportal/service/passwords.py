from __future__ import annotations

import hmac
import secrets

from argon2 import Type
from argon2.low_level import hash_secret_raw

from schoolportal.service.errors import InternalError, ValidationError

# argon2id cost parameters; records do not embed them, so changing these
# invalidates every stored hash
TIME_COST = 3
MEMORY_COST_KIB = 64 * 1024
PARALLELISM = 4
HASH_LEN = 64
SALT_LEN = 32

_SEPARATOR = ":"


class PasswordInputError(ValidationError):
    """Password or stored record has the wrong type or is empty."""


class MalformedHashError(InternalError):
    """Stored record cannot be parsed as ``salt:digest`` hex."""


def _check_password(password: object) -> str:
    if not isinstance(password, str):
        raise PasswordInputError("password must be a string")
    if not password:
        raise PasswordInputError("password cannot be empty")
    try:
        password.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise PasswordInputError("password contains invalid characters") from exc
    return password


def _derive(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=TIME_COST,
        memory_cost=MEMORY_COST_KIB,
        parallelism=PARALLELISM,
        hash_len=HASH_LEN,
        type=Type.ID,
    )


def hash_password(password: str) -> str:
    """Hash ``password`` with a fresh random salt.

    Returns the record as ``<salt hex>:<digest hex>``. Two calls with the
    same password yield different records.
    """
    _check_password(password)
    salt = secrets.token_bytes(SALT_LEN)
    digest = _derive(password, salt)
    return f"{salt.hex()}{_SEPARATOR}{digest.hex()}"


def _parse_record(record: str) -> tuple[bytes, bytes]:
    parts = record.split(_SEPARATOR)
    if len(parts) != 2:
        raise MalformedHashError("invalid hash format")
    salt_hex, digest_hex = parts
    if not salt_hex or not digest_hex:
        raise MalformedHashError("invalid hash format")
    try:
        return bytes.fromhex(salt_hex), bytes.fromhex(digest_hex)
    except ValueError as exc:
        raise MalformedHashError("invalid hash format") from exc


def verify_password(password: str, record: str) -> bool:
    """Check ``password`` against a record produced by :func:`hash_password`.

    A mismatch returns False. A record that cannot be parsed raises
    :class:`MalformedHashError` so corruption is not mistaken for a wrong
    password.
    """
    _check_password(password)
    if not isinstance(record, str):
        raise PasswordInputError("stored hash must be a string")
    salt, expected = _parse_record(record)
    candidate = _derive(password, salt)
    return hmac.compare_digest(candidate, expected)


__all__ = [
    "MalformedHashError",
    "PasswordInputError",
    "hash_password",
    "verify_password",
]
