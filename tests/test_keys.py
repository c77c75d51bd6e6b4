"""
Tests for key schemes
"""

import pytest

from keyward.keys import (
    AgeScheme,
    InvalidKeySchemeError,
    InvalidPrivateKeyError,
    KeySchemeUnavailable,
    X25519Scheme,
    fingerprint,
    get_scheme,
    read_identity,
)


AGE_KEY_FILE = """\
# created: 2024-01-01T00:00:00Z
# public key: age1ql3z7hjy54pw3hyww5ayyfg7zqgvc7w3j2elw8zmrj2kg5sfn9aqmcac8p
AGE-SECRET-KEY-1GFPYYSJZGFPYYSJZGFPYYSJZGFPYYSJZGFPYYSJZGFPYYSJZGFPQ4EGAEX
"""


class TestHelpers:
    """Tests for fingerprint and read_identity"""

    def test_fingerprint_stable(self):
        """Test fingerprints ignore surrounding whitespace"""
        assert fingerprint("age1abc") == fingerprint(" age1abc\n")
        assert len(fingerprint("age1abc")) == 16

    def test_read_identity_skips_comments(self):
        """Test age key files"""
        assert read_identity(AGE_KEY_FILE).startswith("AGE-SECRET-KEY-1")

    def test_read_identity_empty(self):
        """Test a file with no key"""
        with pytest.raises(InvalidPrivateKeyError):
            read_identity("# only a comment\n\n")


class TestAgeScheme:
    """Tests for the age scheme"""

    def test_public_key_format(self):
        """Test the age1 recipient syntax"""
        scheme = AgeScheme()
        assert scheme.is_valid_public_key("age1ql3z7hjy54pw3hyww5ayyfg7zqgvc7w3j2elw8zmrj2kg5sfn9aqmcac8p")
        assert not scheme.is_valid_public_key("age1short")
        assert not scheme.is_valid_public_key("AGE1QL3Z7HJY54PW3HYWW5AYYFG7ZQGVC7W3J2ELW8ZMRJ2KG5SFN9AQMCAC8P")
        assert not scheme.is_valid_public_key("ssh-ed25519 AAAA")
        assert not scheme.is_valid_public_key("")

    def test_private_key_format(self):
        """Test the secret key syntax"""
        scheme = AgeScheme()
        assert scheme.is_valid_private_key(read_identity(AGE_KEY_FILE))
        assert not scheme.is_valid_private_key("age1abc")

    def test_missing_keygen(self):
        """Test age-keygen not installed"""
        scheme = AgeScheme(keygen="age-keygen-does-not-exist")
        with pytest.raises(KeySchemeUnavailable):
            scheme.generate_key_pair()

    def test_derive_rejects_non_age_key(self):
        """Test deriving from a malformed secret key"""
        with pytest.raises(InvalidPrivateKeyError):
            AgeScheme().public_key_for("not-a-key")


class TestX25519Scheme:
    """Tests for the x25519 scheme"""

    def test_generate(self):
        """Test generated keys are valid and consistent"""
        scheme = X25519Scheme()
        pair = scheme.generate_key_pair()
        assert scheme.is_valid_public_key(pair.public_key)
        assert scheme.is_valid_private_key(pair.private_key)
        assert scheme.public_key_for(pair.private_key) == pair.public_key
        assert pair.scheme == "x25519"

    def test_pairs_differ(self):
        """Test fresh randomness per pair"""
        scheme = X25519Scheme()
        assert scheme.generate_key_pair().public_key != scheme.generate_key_pair().public_key

    def test_to_dict_has_no_private_key(self):
        """Test key metadata export"""
        data = X25519Scheme().generate_key_pair().to_dict()
        assert "private_key" not in data
        assert len(data["fingerprint"]) == 16

    def test_load_invalid(self):
        """Test malformed keys"""
        scheme = X25519Scheme()
        with pytest.raises(InvalidPrivateKeyError):
            scheme.load_public("x25519:short")
        with pytest.raises(InvalidPrivateKeyError):
            scheme.public_key_for("x25519-secret:short")


class TestGetScheme:
    """Tests for get_scheme"""

    def test_known(self):
        """Test lookup by name"""
        assert isinstance(get_scheme("age"), AgeScheme)
        assert isinstance(get_scheme("x25519"), X25519Scheme)

    def test_unknown(self):
        """Test an unknown scheme"""
        with pytest.raises(InvalidKeySchemeError):
            get_scheme("rsa")
