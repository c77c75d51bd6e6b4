"""
Envelope encryption gateway for the x25519 key scheme.

Each document is a JSON envelope:

    {
      "format": "keyward-envelope",
      "version": 1,
      "nonce": "...",          # AES-GCM nonce for the content
      "ciphertext": "...",     # content under a random 256-bit content key
      "recipients": [          # sorted by recipient key
        {"recipient": "x25519:...", "epk": "...", "nonce": "...", "wrapped": "..."}
      ]
    }

The content key is wrapped per recipient with an ephemeral X25519
exchange, HKDF-SHA256 and AES-GCM. Re-wrapping for a different recipient
set decrypts with the operator identity and re-encrypts under a fresh
content key, so a removed recipient's old wrap is useless.
"""

import base64
import json
import os
from typing import Any, Dict, Iterable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .documents import DocumentNotFoundError, DocumentStore
from .gateway import (
    AccessDeniedError,
    Cancellation,
    EncryptionGateway,
    MalformedError,
    committing,
)
from .keys import InvalidPrivateKeyError, X25519Scheme
from .logging import get_logger


logger = get_logger()

ENVELOPE_FORMAT = "keyward-envelope"
ENVELOPE_VERSION = 1
CONTENT_AAD = b"keyward-envelope-v1"
WRAP_INFO = b"keyward-wrap-v1"
ENVELOPE_FIELDS = ("nonce", "ciphertext")
RECIPIENT_FIELDS = ("recipient", "epk", "nonce", "wrapped")


def b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"))


def derive_wrap_key(shared: bytes, salt: bytes) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=WRAP_INFO)
    return hkdf.derive(shared)


class EnvelopeGateway(EncryptionGateway):
    """
    Self-contained gateway over a DocumentStore.

    Usage:
        gateway = EnvelopeGateway(MemoryDocumentStore(), identity=admin_private_key)
        store.write_bytes(path, gateway.encrypt(b"password: x\\n", keys))
        gateway.rewrap(path, registry.recipient_keys(path))
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: Optional[str] = None,
        scheme: Optional[X25519Scheme] = None,
    ):
        self.store = store
        self.identity = identity
        self.scheme = scheme or X25519Scheme()

    def _wrap(self, content_key: bytes, recipient: str) -> Dict[str, str]:
        recipient_pub = self.scheme.load_public(recipient)
        ephemeral = X25519PrivateKey.generate()
        epk = ephemeral.public_key().public_bytes_raw()
        wrap_key = derive_wrap_key(
            ephemeral.exchange(recipient_pub),
            salt=epk + recipient_pub.public_bytes_raw(),
        )
        nonce = os.urandom(12)
        return {
            "recipient": recipient,
            "epk": b64e(epk),
            "nonce": b64e(nonce),
            "wrapped": b64e(AESGCM(wrap_key).encrypt(nonce, content_key, None)),
        }

    def _unwrap(self, entry: Dict[str, str], private_key: X25519PrivateKey) -> bytes:
        epk = b64d(entry["epk"])
        shared = private_key.exchange(X25519PublicKey.from_public_bytes(epk))
        wrap_key = derive_wrap_key(
            shared,
            salt=epk + private_key.public_key().public_bytes_raw(),
        )
        return AESGCM(wrap_key).decrypt(b64d(entry["nonce"]), b64d(entry["wrapped"]), None)

    def _load(self, path: str) -> Dict[str, Any]:
        try:
            raw = self.store.read_bytes(path)
        except DocumentNotFoundError as e:
            raise MalformedError(str(e), path)
        try:
            envelope = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedError(f"Not an envelope: {e}", path)
        if not isinstance(envelope, dict) or envelope.get("format") != ENVELOPE_FORMAT:
            raise MalformedError("Not a keyward envelope", path)
        if envelope.get("version") != ENVELOPE_VERSION:
            raise MalformedError(f"Unsupported envelope version: {envelope.get('version')}", path)
        if not isinstance(envelope.get("recipients"), list):
            raise MalformedError("Envelope has no recipient list", path)
        for name in ENVELOPE_FIELDS:
            if not isinstance(envelope.get(name), str):
                raise MalformedError(f"Envelope field '{name}' is not a string", path)
        for entry in envelope["recipients"]:
            if not isinstance(entry, dict) or not all(
                isinstance(entry.get(name), str) for name in RECIPIENT_FIELDS
            ):
                raise MalformedError("Envelope has a malformed recipient entry", path)
        return envelope

    def recipients(self, path: str) -> List[str]:
        envelope = self._load(path)
        return sorted(entry["recipient"] for entry in envelope["recipients"])

    def encrypt(self, plaintext: bytes, recipient_keys: Iterable[str]) -> bytes:
        keys = sorted(set(recipient_keys))
        content_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(12)
        try:
            wraps = [self._wrap(content_key, key) for key in keys]
        except InvalidPrivateKeyError as e:
            raise MalformedError(f"Invalid recipient: {e}")
        envelope = {
            "format": ENVELOPE_FORMAT,
            "version": ENVELOPE_VERSION,
            "nonce": b64e(nonce),
            "ciphertext": b64e(AESGCM(content_key).encrypt(nonce, plaintext, CONTENT_AAD)),
            "recipients": wraps,
        }
        return (json.dumps(envelope, indent=2, sort_keys=True) + "\n").encode("utf-8")

    def decrypt(self, path: str, private_key: str) -> bytes:
        envelope = self._load(path)
        try:
            secret = self.scheme.load_private(private_key)
        except (InvalidPrivateKeyError, ValueError):
            raise AccessDeniedError("Key is not an x25519 identity", path)

        public_key = self.scheme.encode_public(secret.public_key())
        entry = next(
            (e for e in envelope["recipients"] if e.get("recipient") == public_key),
            None,
        )
        if entry is None:
            raise AccessDeniedError("Key is not a recipient of this document", path)

        try:
            content_key = self._unwrap(entry, secret)
        except (InvalidTag, KeyError, ValueError):
            raise AccessDeniedError("Could not unwrap the content key", path)

        try:
            return AESGCM(content_key).decrypt(
                b64d(envelope["nonce"]), b64d(envelope["ciphertext"]), CONTENT_AAD
            )
        except (InvalidTag, KeyError, ValueError) as e:
            raise MalformedError(f"Content failed authentication: {e}", path)

    def rewrap(
        self,
        path: str,
        recipient_keys: Iterable[str],
        cancellation: Optional[Cancellation] = None,
    ) -> bool:
        expected = sorted(set(recipient_keys))
        if self.recipients(path) == expected:
            return False

        if not self.identity:
            raise AccessDeniedError("No operator identity available to re-wrap", path)

        plaintext = self.decrypt(path, self.identity)
        ciphertext = self.encrypt(plaintext, expected)
        with committing(cancellation, path):
            self.store.write_bytes(path, ciphertext)
        logger.debug(f"Re-wrapped {path}", document=path, recipients=len(expected))
        return True
