"""Regression tests for token hashing in the membership store.

Verifies that hash_token() produces a single SHA256 hash, the value stored in
api_tokens.token_hash and compared on every authenticated request.
"""

import hashlib
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from capgate.store import hash_token


class TestTokenHash:

    def test_single_sha256_matches_direct_hashlib(self):
        """hash_token must produce identical output to hashlib.sha256().hexdigest()."""
        token = "test-token-abc123"
        expected = hashlib.sha256(token.encode()).hexdigest()
        assert hash_token(token) == expected

    def test_no_double_hash(self):
        """hash_token must NOT double-hash. SHA256(SHA256(x)) != SHA256(x)."""
        token = "my-secret-token"
        single = hashlib.sha256(token.encode()).hexdigest()
        double = hashlib.sha256(single.encode()).hexdigest()
        result = hash_token(token)
        assert result == single
        assert result != double

    def test_different_tokens_different_hashes(self):
        assert hash_token("token-a") != hash_token("token-b")

    def test_output_is_hex_string(self):
        """Output should be a 64-character hex string (fits api_tokens.token_hash)."""
        result = hash_token("any-token")
        assert len(result) == 64
        assert all(c in "0123456789abcdef" for c in result)

    def test_unicode_token(self):
        token = "token-éèê"
        expected = hashlib.sha256(token.encode()).hexdigest()
        assert hash_token(token) == expected
