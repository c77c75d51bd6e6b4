"""
Key Schemes for Keyward

A key scheme decides what a syntactically valid public key looks like,
how a public key is derived from a private key, and how new key pairs
are generated.

Schemes:
- age: production scheme used with SOPS. Generation and derivation shell
  out to `age-keygen`.
- x25519: local envelope scheme backed by the cryptography library.
"""

import base64
import hashlib
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)


class KeySchemeError(Exception):
    """Base exception for key scheme errors"""
    pass


class InvalidKeySchemeError(KeySchemeError):
    """Raised when an unknown key scheme is requested"""
    pass


class KeySchemeUnavailable(KeySchemeError):
    """Raised when the tooling a scheme needs is not installed"""
    pass


class InvalidPrivateKeyError(KeySchemeError):
    """Raised when a private key cannot be parsed"""
    pass


@dataclass
class KeyPair:
    """Generated key pair. The private half is handed out once, never stored."""
    public_key: str
    private_key: str
    scheme: str
    created_at: str

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)

    def to_dict(self) -> Dict[str, str]:
        """Export key metadata (not the private key)"""
        return {
            "public_key": self.public_key,
            "fingerprint": self.fingerprint,
            "scheme": self.scheme,
            "created_at": self.created_at,
        }


def fingerprint(public_key: str) -> str:
    """Short, stable identifier for a public key (SHA-256 prefix)."""
    return hashlib.sha256(public_key.strip().encode()).hexdigest()[:16]


def read_identity(text: str) -> str:
    """
    Extract a private key from key file content.

    age key files carry `# created:` / `# public key:` comment lines; the
    first non-comment, non-blank line is the key.
    """
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line
    raise InvalidPrivateKeyError("No private key found in identity")


class KeyScheme:
    """Base class for key schemes."""

    name = ""
    public_pattern: "re.Pattern" = re.compile(r"^$")
    private_pattern: "re.Pattern" = re.compile(r"^$")

    def is_valid_public_key(self, key: str) -> bool:
        return bool(key) and bool(self.public_pattern.match(key))

    def is_valid_private_key(self, key: str) -> bool:
        return bool(key) and bool(self.private_pattern.match(key))

    def public_key_for(self, private_key: str) -> str:
        raise NotImplementedError

    def generate_key_pair(self) -> KeyPair:
        raise NotImplementedError


class AgeScheme(KeyScheme):
    """age X25519 recipients as used by SOPS (`age1...`)."""

    name = "age"
    public_pattern = re.compile(r"^age1[a-z0-9]{58}$")
    private_pattern = re.compile(r"^AGE-SECRET-KEY-1[A-Z0-9]{58}$")

    def __init__(self, keygen: str = "age-keygen", timeout: float = 10.0):
        self.keygen = keygen
        self.timeout = timeout

    def _run_keygen(self, args, stdin: Optional[str] = None) -> str:
        try:
            result = subprocess.run(
                [self.keygen] + list(args),
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except FileNotFoundError:
            raise KeySchemeUnavailable(
                f"'{self.keygen}' not found. Install age: https://age-encryption.org"
            )
        except subprocess.CalledProcessError as e:
            raise InvalidPrivateKeyError(f"{self.keygen} failed: {e.stderr.strip()}")
        except subprocess.TimeoutExpired:
            raise KeySchemeUnavailable(f"{self.keygen} timed out")
        return result.stdout

    def public_key_for(self, private_key: str) -> str:
        if not self.is_valid_private_key(private_key):
            raise InvalidPrivateKeyError("Not an age secret key")
        return self._run_keygen(["-y"], stdin=private_key + "\n").strip()

    def generate_key_pair(self) -> KeyPair:
        output = self._run_keygen([])
        public_key = ""
        private_key = ""
        for line in output.splitlines():
            if line.startswith("# public key:"):
                public_key = line.split(":", 1)[1].strip()
            elif line.startswith("AGE-SECRET-KEY-"):
                private_key = line.strip()
        if not private_key:
            raise KeySchemeUnavailable("age-keygen produced no secret key")
        if not public_key:
            public_key = self.public_key_for(private_key)
        return KeyPair(
            public_key=public_key,
            private_key=private_key,
            scheme=self.name,
            created_at=datetime.now().isoformat(),
        )


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class X25519Scheme(KeyScheme):
    """Raw X25519 keys for the local envelope gateway."""

    name = "x25519"
    PUBLIC_PREFIX = "x25519:"
    PRIVATE_PREFIX = "x25519-secret:"
    public_pattern = re.compile(r"^x25519:[A-Za-z0-9_-]{43}$")
    private_pattern = re.compile(r"^x25519-secret:[A-Za-z0-9_-]{43}$")

    def encode_public(self, key: X25519PublicKey) -> str:
        return self.PUBLIC_PREFIX + _b64(key.public_bytes_raw())

    def encode_private(self, key: X25519PrivateKey) -> str:
        return self.PRIVATE_PREFIX + _b64(key.private_bytes_raw())

    def load_public(self, text: str) -> X25519PublicKey:
        if not self.is_valid_public_key(text):
            raise InvalidPrivateKeyError(f"Not an x25519 public key: {text[:20]}...")
        return X25519PublicKey.from_public_bytes(_unb64(text[len(self.PUBLIC_PREFIX):]))

    def load_private(self, text: str) -> X25519PrivateKey:
        if not self.is_valid_private_key(text):
            raise InvalidPrivateKeyError("Not an x25519 secret key")
        return X25519PrivateKey.from_private_bytes(_unb64(text[len(self.PRIVATE_PREFIX):]))

    def public_key_for(self, private_key: str) -> str:
        return self.encode_public(self.load_private(private_key).public_key())

    def generate_key_pair(self) -> KeyPair:
        private = X25519PrivateKey.generate()
        return KeyPair(
            public_key=self.encode_public(private.public_key()),
            private_key=self.encode_private(private),
            scheme=self.name,
            created_at=datetime.now().isoformat(),
        )


SCHEMES = {
    AgeScheme.name: AgeScheme,
    X25519Scheme.name: X25519Scheme,
}


def get_scheme(name: str) -> KeyScheme:
    """Instantiate a key scheme by name."""
    try:
        return SCHEMES[name]()
    except KeyError:
        raise InvalidKeySchemeError(
            f"Unknown key scheme '{name}' (available: {', '.join(sorted(SCHEMES))})"
        )
