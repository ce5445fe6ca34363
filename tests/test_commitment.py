"""
Tests for server seed generation and the commit/reveal primitive.
"""

import hashlib

import pytest

import commitment
from commitment import (
    generate_client_seed, generate_server_seed, hash_seed, self_check, verify_commitment,
)
from errors import EntropyUnavailableError


def test_server_seed_is_64_hex_chars_and_unique():
    seeds = {generate_server_seed() for _ in range(200)}
    assert len(seeds) == 200
    for s in seeds:
        assert len(s) == 64
        int(s, 16)


def test_client_seed_is_32_hex_chars():
    s = generate_client_seed()
    assert len(s) == 32
    int(s, 16)


def test_hash_is_sha256_of_seed():
    seed = generate_server_seed()
    assert hash_seed(seed) == hashlib.sha256(seed.encode()).hexdigest()
    assert hash_seed(seed) == hash_seed(seed)


def test_verify_commitment():
    seed = generate_server_seed()
    h = hash_seed(seed)
    assert verify_commitment(seed, h)
    assert verify_commitment(seed, h.upper())
    assert not verify_commitment(seed + "x", h)
    assert not verify_commitment(seed, "")


def test_self_check_passes():
    self_check()


def test_generator_failure_fails_closed(monkeypatch):
    def boom(n=None):
        raise OSError("no entropy")

    monkeypatch.setattr(commitment.secrets, "token_hex", boom)
    with pytest.raises(EntropyUnavailableError):
        generate_server_seed()
    with pytest.raises(EntropyUnavailableError):
        self_check()


def test_self_check_detects_broken_digest(monkeypatch):
    monkeypatch.setattr(commitment, "_KAT_DIGEST", "0" * 64)
    with pytest.raises(EntropyUnavailableError):
        self_check()
