# commitment.py
"""
FAIRPLAY — Commitment
Server seed generation and the SHA-256 commit/reveal primitive.
"""

from __future__ import annotations

import hmac
import hashlib
import secrets

from errors import EntropyUnavailableError

SERVER_SEED_BYTES = 32
CLIENT_SEED_BYTES = 16

# FIPS 180-2 known answer for SHA-256("abc")
_KAT_INPUT = b"abc"
_KAT_DIGEST = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def _token_hex(nbytes: int) -> str:
    try:
        return secrets.token_hex(nbytes)
    except (OSError, NotImplementedError) as e:
        raise EntropyUnavailableError(f"CSPRNG unavailable: {e}") from e


def generate_server_seed() -> str:
    return _token_hex(SERVER_SEED_BYTES)


def generate_client_seed() -> str:
    return _token_hex(CLIENT_SEED_BYTES)


def hash_seed(server_seed: str) -> str:
    """Publishable commitment: sha256(server_seed) as hex."""
    return hashlib.sha256(server_seed.encode()).hexdigest()


def verify_commitment(server_seed: str, server_seed_hash: str) -> bool:
    return hmac.compare_digest(hash_seed(server_seed), (server_seed_hash or "").lower())


def self_check() -> None:
    """
    Known-answer test for the digest and a sanity check of the CSPRNG.
    Raises EntropyUnavailableError if either is unusable.
    """
    try:
        digest = hashlib.sha256(_KAT_INPUT).hexdigest()
    except (ValueError, AttributeError) as e:
        raise EntropyUnavailableError(f"sha256 unavailable: {e}") from e
    if digest != _KAT_DIGEST:
        raise EntropyUnavailableError("sha256 known-answer test failed")

    a, b = _token_hex(SERVER_SEED_BYTES), _token_hex(SERVER_SEED_BYTES)
    if a == b or len(a) != SERVER_SEED_BYTES * 2:
        raise EntropyUnavailableError("CSPRNG produced degenerate output")
