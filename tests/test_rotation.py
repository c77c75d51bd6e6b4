"""
Tests for the rotation engine
"""

import re

import pytest
import yaml

from conftest import BROKEN_ENVELOPE
from keyward.registry import KeyRegistry
from keyward.rotation import (
    ROTATION_FIELD,
    Classification,
    RotationEngine,
    RotationError,
    SecretGenerator,
    classify,
    is_secret_field,
    iter_fields,
)


@pytest.fixture
def engine(gateway, seeded, admin_key):
    return RotationEngine(gateway, seeded, identity=admin_key.private_key)


def decrypted(gateway, path, key):
    return yaml.safe_load(gateway.decrypt(path, key.private_key))


class TestClassify:
    """Tests for field classification"""

    @pytest.mark.parametrize("paths,expected", [
        (["database.host", "database.password"], Classification.DATABASE_CREDENTIAL),
        (["postgres.user", "postgres.pass"], Classification.DATABASE_CREDENTIAL),
        (["smtp_password"], Classification.DATABASE_CREDENTIAL),
        (["stripe_key", "github_token"], Classification.API_KEY),
        (["webhook_secret"], Classification.API_KEY),
        (["greeting", "colour"], Classification.GENERIC),
    ])
    def test_classification(self, paths, expected):
        """Test heuristic classification"""
        assert classify(paths) == expected

    def test_log_labels(self):
        """Test rotation log labels"""
        assert Classification.DATABASE_CREDENTIAL.log_label == "DATABASE"
        assert Classification.API_KEY.log_label == "API_KEYS"
        assert Classification.GENERIC.log_label == "GENERIC"

    def test_secret_fields(self):
        """Test which leaves count as secrets"""
        assert is_secret_field("db.password", "x")
        assert is_secret_field("api_key", "x")
        assert not is_secret_field("db.host", "x")
        assert not is_secret_field("token_enabled", True)
        assert not is_secret_field("secret_ref", None)

    def test_iter_fields(self):
        """Test dotted paths over nested mappings and lists"""
        data = {"a": {"b": 1, "c": [2, {"d": 3}]}, ROTATION_FIELD: {"x": 1}}
        assert [p for p, _, _, _ in iter_fields(data)] == ["a.b", "a.c.0", "a.c.1.d"]


class TestSecretGenerator:
    """Tests for SecretGenerator"""

    def test_password(self):
        """Test password alphabet and length"""
        value = SecretGenerator().generate("password", 32)
        assert re.fullmatch(r"[A-Za-z0-9]{32}", value)

    def test_token(self):
        """Test hex tokens"""
        assert re.fullmatch(r"[0-9a-f]{64}", SecretGenerator().generate("token", 64))

    def test_unknown_kind(self):
        """Test unsupported kinds"""
        with pytest.raises(ValueError):
            SecretGenerator().generate("pin")


class TestRotate:
    """Tests for RotationEngine.rotate"""

    def test_database_credentials(self, engine, gateway, base_registry, admin_key):
        """Test passwords are replaced and other fields kept"""
        path = "secrets/production/database.enc.yaml"
        record = engine.rotate(path, base_registry, reason="offboarding")
        assert record.classification == Classification.DATABASE_CREDENTIAL
        assert record.fields == ["postgres.password"]
        assert not record.manual_update_required

        data = decrypted(gateway, path, admin_key)
        assert data["postgres"]["user"] == "app"
        assert data["postgres"]["password"] != "s3cret"
        assert len(data["postgres"]["password"]) == 32
        assert data[ROTATION_FIELD]["reason"] == "offboarding"
        assert data[ROTATION_FIELD]["classification"] == "database-credential"

    def test_api_keys_keep_prefix(self, engine, gateway, base_registry, admin_key):
        """Test API tokens keep their recognisable prefix"""
        path = "secrets/production/credentials.enc.yaml"
        record = engine.rotate(path, base_registry)
        assert record.classification == Classification.API_KEY
        assert record.fields_changed == 2

        data = decrypted(gateway, path, admin_key)
        assert re.fullmatch(r"sk_live_[0-9a-f]{64}", data["stripe_key"])
        assert re.fullmatch(r"ghp_[0-9a-f]{64}", data["github_token"])

    def test_recipients_preserved(self, engine, gateway, base_registry, seeded):
        """Test rotation never changes who can read the document"""
        path = "secrets/production/credentials.enc.yaml"
        before = gateway.recipients(path)
        engine.rotate(path, base_registry)
        assert gateway.recipients(path) == before

    def test_generic_requires_manual_update(self, engine, gateway, base_registry, admin_key):
        """Test documents with no recognisable secrets are only annotated"""
        path = "examples/sample.enc.yaml"
        record = engine.rotate(path, base_registry)
        assert record.classification == Classification.GENERIC
        assert record.manual_update_required
        assert record.fields_changed == 0
        assert record.log_line().endswith("| GENERIC | examples/sample.enc.yaml | Manual update required")

        data = decrypted(gateway, path, admin_key)
        assert data["greeting"] == "hello"
        assert data[ROTATION_FIELD]["manual_update_required"] is True

    def test_field_selectors(self, engine, gateway, base_registry, admin_key):
        """Test only selected fields rotate"""
        path = "secrets/production/credentials.enc.yaml"
        record = engine.rotate(path, base_registry, field_selectors=["stripe_*"])
        assert record.fields == ["stripe_key"]
        assert decrypted(gateway, path, admin_key)["github_token"] == "ghp_xyz"

    def test_backup_taken(self, engine, seeded, base_registry):
        """Test the old ciphertext is kept"""
        path = "secrets/production/database.enc.yaml"
        old = seeded.read_bytes(path)
        record = engine.rotate(path, base_registry)
        assert seeded.backups[record.backup] == old

    def test_rotating_twice_keeps_one_annotation(self, engine, gateway, base_registry, admin_key):
        """Test the annotation is replaced, not rotated as a secret"""
        path = "secrets/production/database.enc.yaml"
        engine.rotate(path, base_registry, reason="first")
        record = engine.rotate(path, base_registry, reason="second")
        assert record.fields == ["postgres.password"]
        assert decrypted(gateway, path, admin_key)[ROTATION_FIELD]["reason"] == "second"

    def test_stale_document_refused(self, engine, seeded, base_registry, scheme, alice_key):
        """Test rotation requires a reconciled document"""
        registry = base_registry.with_principal("alice", "developer", alice_key.public_key, scheme)
        with pytest.raises(RotationError) as exc:
            engine.rotate("secrets/dev/database.enc.yaml", registry)
        assert exc.value.kind == "stale"

    def test_ungoverned_refused(self, engine, base_registry):
        """Test documents outside every rule"""
        with pytest.raises(RotationError) as exc:
            engine.rotate("docs/notes.enc.yaml", base_registry)
        assert exc.value.kind == "not_governed"

    def test_no_identity(self, gateway, seeded, base_registry):
        """Test rotation needs an operator key"""
        engine = RotationEngine(gateway, seeded, identity=None)
        with pytest.raises(RotationError) as exc:
            engine.rotate("secrets/production/database.enc.yaml", base_registry)
        assert exc.value.kind == "decryption_denied"

    def test_operator_not_recipient(self, gateway, seeded, base_registry, bob_key):
        """Test an operator outside the recipient set"""
        engine = RotationEngine(gateway, seeded, identity=bob_key.private_key)
        with pytest.raises(RotationError) as exc:
            engine.rotate("secrets/production/database.enc.yaml", base_registry)
        assert exc.value.kind == "decryption_denied"

    def test_non_mapping_is_malformed(self, engine, gateway, seeded, base_registry, admin_key):
        """Test a document whose plaintext is not a mapping"""
        path = "secrets/production/database.enc.yaml"
        seeded.write_bytes(path, gateway.encrypt(b"- just\n- a list\n", base_registry.recipient_keys(path)))
        with pytest.raises(RotationError) as exc:
            engine.rotate(path, base_registry)
        assert exc.value.kind == "malformed"


class TestRotateMany:
    """Tests for RotationEngine.rotate_many"""

    def test_partial_failure(self, engine, base_registry):
        """Test failures are collected and the rest still rotate"""
        records, failures = engine.rotate_many(
            [
                "secrets/production/credentials.enc.yaml",
                "docs/notes.enc.yaml",
                "secrets/production/database.enc.yaml",
            ],
            base_registry,
        )
        assert [r.path for r in records] == [
            "secrets/production/credentials.enc.yaml",
            "secrets/production/database.enc.yaml",
        ]
        assert [(f.path, f.kind) for f in failures] == [("docs/notes.enc.yaml", "not_governed")]

    def test_zero_recipient_document(self, gateway, seeded, admin_key):
        """Test a document wrapped for nobody cannot be rotated"""
        empty = KeyRegistry()
        gateway.rewrap("secrets/production/database.enc.yaml", [])
        engine = RotationEngine(gateway, seeded, identity=admin_key.private_key)
        records, failures = engine.rotate_many(["secrets/production/database.enc.yaml"], empty)
        assert records == []
        assert failures[0].kind == "decryption_denied"

    def test_broken_envelope_is_a_failure(self, engine, seeded, base_registry):
        """Test an envelope with the wrong inner shapes fails only itself"""
        seeded.write_bytes("secrets/production/broken.enc.yaml", BROKEN_ENVELOPE)
        records, failures = engine.rotate_many(
            ["secrets/production/broken.enc.yaml", "secrets/production/database.enc.yaml"],
            base_registry,
        )
        assert [r.path for r in records] == ["secrets/production/database.enc.yaml"]
        assert [(f.path, f.kind) for f in failures] == [("secrets/production/broken.enc.yaml", "malformed")]

    def test_unexpected_error_is_collected(self, engine, gateway, base_registry, monkeypatch):
        """Test a non-gateway exception is reported for its document only"""
        real = gateway.recipients

        def recipients(path):
            if path == "secrets/production/credentials.enc.yaml":
                raise KeyError("recipient")
            return real(path)

        monkeypatch.setattr(gateway, "recipients", recipients)
        records, failures = engine.rotate_many(
            ["secrets/production/credentials.enc.yaml", "secrets/production/database.enc.yaml"],
            base_registry,
        )
        assert [r.path for r in records] == ["secrets/production/database.enc.yaml"]
        assert failures[0].kind == "malformed"
        assert "KeyError" in failures[0].message
