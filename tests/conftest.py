"""
Shared fixtures for Keyward tests

Everything here runs on the x25519 scheme with in-memory stores, so no
sops/age binaries are needed.
"""

import time

import pytest

from keyward.audit import MemoryAuditLog
from keyward.documents import MemoryDocumentStore
from keyward.envelope import EnvelopeGateway
from keyward.gateway import EncryptionGateway, UnavailableError
from keyward.keys import X25519Scheme
from keyward.lifecycle import Keyward
from keyward.logging import configure_logging
from keyward.registry import Group, KeyRegistry
from keyward.storage import MemoryConfigStore
from keyward.tracking import RecordingChangeTracker


DOCUMENTS = {
    "secrets/dev/database.enc.yaml": b"database:\n  host: db.local\n  password: hunter2\n",
    "secrets/staging/api.enc.yaml": b"api_key: sk_test_123\nendpoint: https://staging\n",
    "secrets/production/credentials.enc.yaml": (
        b"stripe_key: sk_live_abc\ngithub_token: ghp_xyz\n"
    ),
    "secrets/production/database.enc.yaml": (
        b"postgres:\n  user: app\n  password: s3cret\n"
    ),
    "examples/sample.enc.yaml": b"greeting: hello\n",
    "docs/notes.enc.yaml": b"ungoverned: true\n",
}

# Right format and version, wrong inner shapes
BROKEN_ENVELOPE = (
    b'{"format": "keyward-envelope", "version": 1, "nonce": 5,'
    b' "ciphertext": "x", "recipients": ["bogus"]}'
)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Bind the log handler to this test's stderr"""
    configure_logging(level="ERROR")


@pytest.fixture
def scheme():
    return X25519Scheme()


@pytest.fixture
def make_key(scheme):
    """Factory for fresh x25519 key pairs"""
    return scheme.generate_key_pair


@pytest.fixture
def admin_key(make_key):
    return make_key()


@pytest.fixture
def alice_key(make_key):
    return make_key()


@pytest.fixture
def bob_key(make_key):
    return make_key()


@pytest.fixture
def base_registry(scheme, admin_key):
    """Registry with one administrator"""
    return KeyRegistry().with_principal(
        "admin1", Group.ADMINISTRATOR, admin_key.public_key, scheme
    )


@pytest.fixture
def config_store(base_registry):
    return MemoryConfigStore(base_registry)


@pytest.fixture
def documents():
    return MemoryDocumentStore()


@pytest.fixture
def gateway(documents, admin_key, scheme):
    return EnvelopeGateway(documents, identity=admin_key.private_key, scheme=scheme)


def seed_documents(documents, gateway, registry, contents=None):
    """Encrypt each document for the recipients the registry expects."""
    for path, plaintext in (contents or DOCUMENTS).items():
        documents.write_bytes(path, gateway.encrypt(plaintext, registry.recipient_keys(path)))


@pytest.fixture
def seeded(documents, gateway, base_registry):
    seed_documents(documents, gateway, base_registry)
    return documents


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest.fixture
def tracker():
    return RecordingChangeTracker()


@pytest.fixture
def keyward(config_store, seeded, gateway, scheme, admin_key, audit_log, tracker):
    """In-memory Keyward with an administrator operator and seeded documents"""
    return Keyward(
        config_store=config_store,
        documents=seeded,
        gateway=gateway,
        scheme=scheme,
        identity=admin_key.private_key,
        audit=audit_log,
        tracker=tracker,
    )


class FlakyGateway(EncryptionGateway):
    """Delegating gateway whose backend is unreachable for some paths."""

    def __init__(self, inner, unavailable=()):
        self.inner = inner
        self.unavailable = set(unavailable)
        self.rewrap_calls = []

    def _check(self, path):
        if path in self.unavailable:
            raise UnavailableError("backend unreachable", path)

    def rewrap(self, path, recipient_keys, cancellation=None):
        self.rewrap_calls.append(path)
        self._check(path)
        return self.inner.rewrap(path, recipient_keys, cancellation)

    def decrypt(self, path, private_key):
        self._check(path)
        return self.inner.decrypt(path, private_key)

    def encrypt(self, plaintext, recipient_keys):
        return self.inner.encrypt(plaintext, recipient_keys)

    def recipients(self, path):
        self._check(path)
        return self.inner.recipients(path)


class SlowGateway(FlakyGateway):
    """Delegating gateway that stalls on some paths."""

    def __init__(self, inner, slow=(), delay=2.0):
        super().__init__(inner)
        self.slow = set(slow)
        self.delay = delay

    def rewrap(self, path, recipient_keys, cancellation=None):
        if path in self.slow:
            time.sleep(self.delay)
        return self.inner.rewrap(path, recipient_keys, cancellation)


@pytest.fixture
def flaky_gateway():
    return FlakyGateway


@pytest.fixture
def slow_gateway():
    return SlowGateway
