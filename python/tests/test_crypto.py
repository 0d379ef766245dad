"""Tests for conversation key derivation and content encryption.

Covers:
- Key determinism across participant order
- Round-trip of encrypt/decrypt with the derived key
- Placeholder on wrong key, tampering, malformed input and empty plaintext
- Key validation for missing, truncated and foreign keys
"""

import base64

import pytest

from rendezvous.services.crypto import (
    ENCRYPTED_PLACEHOLDER,
    KEY_SIZE,
    NONCE_SIZE,
    CryptoError,
    decrypt_content,
    derive_conversation_key,
    encrypt_content,
    is_placeholder,
    is_valid_conversation_key,
)

SALT = "unit-test-salt"


class TestKeyDerivation:
    def test_same_key_regardless_of_participant_order(self):
        assert derive_conversation_key(["alice", "bob"], SALT) == derive_conversation_key(
            ["bob", "alice"], SALT
        )

    def test_key_is_hex_of_secretbox_size(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        assert len(key) == KEY_SIZE * 2
        bytes.fromhex(key)

    def test_salt_changes_the_key(self):
        assert derive_conversation_key(["alice", "bob"], SALT) != derive_conversation_key(
            ["alice", "bob"], "other-salt"
        )

    def test_different_pairs_get_different_keys(self):
        assert derive_conversation_key(["alice", "bob"], SALT) != derive_conversation_key(
            ["alice", "carol"], SALT
        )


class TestKeyValidation:
    def test_derived_key_is_valid(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        assert is_valid_conversation_key(key, ["bob", "alice"], SALT)

    @pytest.mark.parametrize("key", [None, "", "abc123", "0" * 64])
    def test_missing_truncated_or_foreign_keys_are_invalid(self, key):
        assert not is_valid_conversation_key(key, ["alice", "bob"], SALT)

    def test_key_of_other_pair_is_invalid(self):
        key = derive_conversation_key(["alice", "carol"], SALT)
        assert not is_valid_conversation_key(key, ["alice", "bob"], SALT)


class TestEncryption:
    def test_round_trip(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        ciphertext = encrypt_content("Hi there 👋", key)

        assert ciphertext != "Hi there 👋"
        assert decrypt_content(ciphertext, key) == "Hi there 👋"

    def test_fresh_nonce_per_encryption(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        first = encrypt_content("same text", key)
        second = encrypt_content("same text", key)

        assert first != second
        assert base64.b64decode(first)[:NONCE_SIZE] != base64.b64decode(second)[:NONCE_SIZE]

    def test_malformed_key_raises(self):
        with pytest.raises(CryptoError):
            encrypt_content("hello", "not-hex")

    def test_short_key_raises(self):
        with pytest.raises(CryptoError, match="32 bytes"):
            encrypt_content("hello", "ab" * 8)


class TestDecryption:
    def test_wrong_key_yields_placeholder(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        other = derive_conversation_key(["alice", "carol"], SALT)
        ciphertext = encrypt_content("secret", key)

        assert decrypt_content(ciphertext, other) == ENCRYPTED_PLACEHOLDER

    def test_tampered_ciphertext_yields_placeholder(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        raw = bytearray(base64.b64decode(encrypt_content("secret", key)))
        raw[-1] ^= 0x01

        assert decrypt_content(base64.b64encode(bytes(raw)).decode(), key) == ENCRYPTED_PLACEHOLDER

    @pytest.mark.parametrize("ciphertext", ["", "not base64!!", "aGVsbG8="])
    def test_malformed_input_yields_placeholder(self, ciphertext):
        key = derive_conversation_key(["alice", "bob"], SALT)
        assert decrypt_content(ciphertext, key) == ENCRYPTED_PLACEHOLDER

    def test_whitespace_plaintext_yields_placeholder(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        assert decrypt_content(encrypt_content("   ", key), key) == ENCRYPTED_PLACEHOLDER

    def test_malformed_key_yields_placeholder(self):
        key = derive_conversation_key(["alice", "bob"], SALT)
        assert decrypt_content(encrypt_content("x", key), "zz") == ENCRYPTED_PLACEHOLDER

    def test_is_placeholder(self):
        assert is_placeholder(ENCRYPTED_PLACEHOLDER)
        assert not is_placeholder("hello")
        assert not is_placeholder(None)
