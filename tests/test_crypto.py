# tests/test_crypto.py
"""Tests for PIN hashing."""
import pytest

from socialbank.infra.crypto import CryptoError, hash_pin, verify_pin


class TestPinHashing:

    def test_hash_and_verify(self):
        encoded = hash_pin("1234", iterations=1000)
        assert verify_pin("1234", encoded) is True
        assert verify_pin("4321", encoded) is False

    def test_encoding_carries_iterations(self):
        algorithm, iterations, salt, digest = hash_pin("1234", iterations=1500).split("$")
        assert algorithm == "pbkdf2_sha256"
        assert iterations == "1500"

    def test_salt_is_random(self):
        assert hash_pin("1234", iterations=1000) != hash_pin("1234", iterations=1000)

    def test_verify_uses_stored_iterations(self):
        old = hash_pin("1234", iterations=1000)
        # Raising the default cost must not invalidate existing hashes
        assert verify_pin("1234", old) is True

    @pytest.mark.parametrize("encoded", [
        "",
        "plain-text-pin",
        "md5$1000$c2FsdA==$ZGlnZXN0",
        "pbkdf2_sha256$many$c2FsdA==$ZGlnZXN0",
    ])
    def test_malformed_hash(self, encoded):
        with pytest.raises(CryptoError):
            verify_pin("1234", encoded)
