"""Credential generation and hashing for API keys."""

import asyncio
import base64
import hashlib
import secrets

import bcrypt

from trustcore.config import settings

KEY_BODY_BYTES = 32
SECRET_BYTES = 64
PREFIX_HEX_CHARS = 8


def generate_api_key(prefix: str | None = None) -> str:
    """
    Generate a new plaintext API key.

    Args:
        prefix: Literal prefix for operator recognizability

    Returns:
        Prefix followed by 64 lowercase hex characters
    """
    prefix = settings.api_key_prefix if prefix is None else prefix
    return prefix + secrets.token_hex(KEY_BODY_BYTES)


def generate_api_secret() -> str:
    """64 random bytes, URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(SECRET_BYTES)).rstrip(b"=").decode("ascii")


def lookup_prefix(api_key: str, prefix: str | None = None) -> str:
    """
    Return the non-secret lookup fragment of a plaintext key.

    Args:
        api_key: Plaintext key
        prefix: Literal prefix the key was issued with

    Returns:
        The literal prefix plus the first 8 hex characters of the body
    """
    prefix = settings.api_key_prefix if prefix is None else prefix
    return api_key[: len(prefix) + PREFIX_HEX_CHARS]


def _prehash(value: str) -> bytes:
    # bcrypt only reads 72 bytes; secrets are longer than that
    return base64.b64encode(hashlib.sha256(value.encode("utf-8")).digest())


def hash_credential(value: str, rounds: int | None = None) -> str:
    """
    Hash a key or secret using bcrypt.

    Args:
        value: Plain text credential to hash
        rounds: bcrypt cost factor (defaults to settings.api_key_bcrypt_rounds)

    Returns:
        Bcrypt hash of the credential
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.api_key_bcrypt_rounds)
    return bcrypt.hashpw(_prehash(value), salt).decode("utf-8")


def verify_credential(value: str, credential_hash: str) -> bool:
    """
    Verify a key or secret against its hash.

    Args:
        value: Plain text credential to verify
        credential_hash: Bcrypt hash to verify against

    Returns:
        True if the credential matches the hash, False otherwise
    """
    try:
        return bcrypt.checkpw(_prehash(value), credential_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


async def hash_credential_async(value: str, rounds: int | None = None) -> str:
    """Hash in a worker thread so the event loop keeps serving requests."""
    return await asyncio.to_thread(hash_credential, value, rounds)


async def verify_credential_async(value: str, credential_hash: str) -> bool:
    """Verify in a worker thread so the event loop keeps serving requests."""
    return await asyncio.to_thread(verify_credential, value, credential_hash)
