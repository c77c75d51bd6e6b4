"""
CLI integration tests for Keyward

Each test runs `keyward` in-process against an x25519 project in a
temporary directory.
"""

import json

import pytest

from conftest import seed_documents
from keyward.cli import create_parser, main
from keyward.envelope import EnvelopeGateway
from keyward.lifecycle import Keyward


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Empty x25519 project as the working directory, no ambient identity"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for var in ("KEYWARD_IDENTITY", "KEYWARD_IDENTITY_FILE", "SOPS_AGE_KEY", "SOPS_AGE_KEY_FILE"):
        monkeypatch.delenv(var, raising=False)
    main(["init", "demo", "--scheme", "x25519"])
    return tmp_path


@pytest.fixture
def populated(project, monkeypatch, admin_key, scheme, capsys):
    """Project with admin1 onboarded and documents seeded"""
    main([
        "onboard", "--name", "admin1", "--group", "administrator",
        "--key", admin_key.public_key, "--skip-git",
    ])
    kw = Keyward.open(project, track_changes=False)
    seed_documents(kw.documents, EnvelopeGateway(kw.documents, scheme=scheme), kw.config_store.load())
    monkeypatch.setenv("KEYWARD_IDENTITY", admin_key.private_key)
    capsys.readouterr()
    return project


def run(argv, capsys):
    """Run the CLI; returns (exit code, stdout)."""
    try:
        main(argv)
        code = 0
    except SystemExit as e:
        code = e.code or 0
    return code, capsys.readouterr().out


class TestParser:
    """Tests for argument parsing"""

    def test_commands_registered(self):
        """Test every command parses"""
        parser = create_parser()
        for argv in (
            ["init"],
            ["onboard", "--name", "a", "--group", "developer", "--generate-key"],
            ["offboard", "--name", "a", "--rotate-secrets"],
            ["list"],
            ["verify", "key.txt"],
            ["reconcile", "--dry-run"],
            ["rotate", "secrets/production/a.enc.yaml", "--field", "password"],
            ["rotate", "--category", "production"],
            ["history", "-n", "5"],
        ):
            assert parser.parse_args(argv).func is not None

    def test_key_sources_exclusive(self, capsys):
        """Test --key and --generate-key cannot be combined"""
        with pytest.raises(SystemExit):
            create_parser().parse_args(
                ["onboard", "--name", "a", "--group", "developer", "--key", "k", "--generate-key"]
            )

    def test_no_command(self, capsys):
        """Test bare invocation prints help"""
        code, out = run([], capsys)
        assert code == 0
        assert "onboard" in out


class TestInit:
    """Tests for keyward init"""

    def test_init(self, project):
        """Test the project layout is created"""
        assert (project / ".keyward" / "registry.yaml").is_file()
        assert json.loads((project / ".keyward" / "config.json").read_text())["key_scheme"] == "x25519"

    def test_init_twice(self, project, capsys):
        """Test re-initialising without --force"""
        code, out = run(["init", "demo"], capsys)
        assert code == 1
        assert "--force" in out

    def test_not_initialized(self, tmp_path, monkeypatch, capsys):
        """Test commands outside a project"""
        monkeypatch.chdir(tmp_path)
        code, out = run(["list"], capsys)
        assert code == 1
        assert "keyward init" in out


class TestOnboardOffboard:
    """Tests for keyward onboard / offboard"""

    def test_onboard_json(self, populated, alice_key, capsys):
        """Test machine-readable onboard output"""
        code, out = run([
            "onboard", "--name", "alice", "--group", "developers",
            "--key", alice_key.public_key, "--skip-git", "--json",
        ], capsys)
        assert code == 0
        data = json.loads(out)
        assert data["principal"]["group"] == "developer"
        assert data["reconciliation"]["changed"] == 2
        assert data["reconciliation"]["ok"] is True
        assert (populated / "keys" / "developer" / "alice.pub").is_file()

    def test_onboard_key_file(self, populated, alice_key, capsys):
        """Test reading the public key from a file"""
        key_file = populated / "alice.pub"
        key_file.write_text(alice_key.public_key + "\n")
        code, out = run([
            "onboard", "--name", "alice", "--group", "developer",
            "--key-file", str(key_file), "--skip-git",
        ], capsys)
        assert code == 0
        assert "Onboarded alice (developer)" in out

    def test_onboard_generated_key_shown_once(self, populated, capsys):
        """Test a generated private key is printed"""
        code, out = run([
            "onboard", "--name", "deploy_bot", "--group", "ci", "--generate-key", "--skip-git",
        ], capsys)
        assert code == 0
        assert "x25519-secret:" in out
        assert "x25519-secret:" not in (populated / ".keyward" / "registry.yaml").read_text()

    def test_onboard_invalid_key(self, populated, capsys):
        """Test a malformed key is rejected with exit 1"""
        before = (populated / ".keyward" / "registry.yaml").read_text()
        code, out = run([
            "onboard", "--name", "alice", "--group", "developer", "--key", "age1nope", "--skip-git",
        ], capsys)
        assert code == 1
        assert out.startswith("Error:")
        assert (populated / ".keyward" / "registry.yaml").read_text() == before

    def test_onboard_invalid_name(self, populated, alice_key, capsys):
        """Test names outside a-z0-9_ are rejected"""
        code, out = run([
            "onboard", "--name", "Alice!", "--group", "developer",
            "--key", alice_key.public_key, "--skip-git",
        ], capsys)
        assert code == 1
        assert "Invalid principal name" in out

    def test_offboard(self, populated, alice_key, capsys):
        """Test offboarding removes access"""
        run([
            "onboard", "--name", "alice", "--group", "developer",
            "--key", alice_key.public_key, "--skip-git",
        ], capsys)
        code, out = run(["offboard", "--name", "alice", "--skip-git", "--json"], capsys)
        assert code == 0
        data = json.loads(out)
        assert data["residual_access"] == []
        assert len(data["affected_documents"]) == 2

        key_file = populated / "alice.key"
        key_file.write_text(alice_key.private_key + "\n")
        code, out = run(["verify", str(key_file), "--json"], capsys)
        assert json.loads(out)["accessible"] == 0

    def test_offboard_with_rotation(self, populated, bob_key, capsys):
        """Test --rotate-secrets rotates production documents"""
        run([
            "onboard", "--name", "bob", "--group", "service",
            "--key", bob_key.public_key, "--skip-git",
        ], capsys)
        code, out = run(["offboard", "--name", "bob", "--rotate-secrets", "--skip-git"], capsys)
        assert code == 0
        assert "Rotated 2 document(s)" in out
        assert list((populated / ".keyward" / "backups").rglob("*.bak"))

    def test_offboard_unknown(self, populated, capsys):
        """Test offboarding a missing principal"""
        code, out = run(["offboard", "--name", "ghost", "--skip-git"], capsys)
        assert code == 1
        assert "not found" in out


class TestReadCommands:
    """Tests for list, verify, reconcile, rotate and history"""

    def test_list(self, populated, capsys):
        """Test listing principals and rules"""
        code, out = run(["list", "--json"], capsys)
        assert code == 0
        data = json.loads(out)
        assert data["total"] == 1
        assert data["principals"]["administrator"][0]["name"] == "admin1"
        assert [r["category"] for r in data["rules"]] == ["development", "staging", "production", "examples"]

        code, out = run(["list"], capsys)
        assert "admin1" in out
        assert "production" in out

    def test_verify_operator_identity(self, populated, capsys):
        """Test verify defaults to the operator identity"""
        code, out = run(["verify"], capsys)
        assert code == 0
        assert "Registered as: admin1 (administrator)" in out
        assert "production   2/2" in out

    def test_verify_unregistered(self, populated, alice_key, capsys):
        """Test verifying an unknown key"""
        key_file = populated / "alice.key"
        key_file.write_text(alice_key.private_key)
        code, out = run(["verify", str(key_file)], capsys)
        assert code == 0
        assert "not in registry" in out

    def test_reconcile_dry_run(self, populated, capsys):
        """Test a clean project has nothing stale"""
        code, out = run(["reconcile", "--dry-run", "--json"], capsys)
        assert code == 0
        assert json.loads(out)["ok"] is True

    def test_reconcile_needs_identity(self, populated, monkeypatch, capsys):
        """Test reconcile without an operator key"""
        monkeypatch.delenv("KEYWARD_IDENTITY")
        code, out = run(["reconcile"], capsys)
        assert code == 1
        assert "no operator identity" in out

    def test_rotate(self, populated, capsys):
        """Test rotating one document"""
        code, out = run(["rotate", "secrets/production/database.enc.yaml", "--reason", "leak", "--skip-git"], capsys)
        assert code == 0
        assert "| DATABASE | secrets/production/database.enc.yaml | Success" in out

    def test_rotate_failure_exit_code(self, populated, capsys):
        """Test a failed rotation exits 1"""
        code, out = run(["rotate", "docs/notes.enc.yaml", "--skip-git"], capsys)
        assert code == 1
        assert "not_governed" in out

    def test_rotate_category(self, populated, capsys):
        """Test rotating every production document"""
        code, out = run(["rotate", "--category", "production", "--json", "--skip-git"], capsys)
        assert code == 0
        data = json.loads(out)
        assert sorted(r["path"] for r in data["rotated"]) == [
            "secrets/production/credentials.enc.yaml",
            "secrets/production/database.enc.yaml",
        ]
        assert data["failed"] == []

    def test_rotate_unknown_category(self, populated, capsys):
        """Test an unknown category is an error"""
        code, out = run(["rotate", "--category", "qa", "--skip-git"], capsys)
        assert code == 1
        assert "Unknown category 'qa'" in out

    def test_rotate_needs_a_target(self, populated, capsys):
        """Test rotate with neither paths nor a category"""
        code, out = run(["rotate", "--skip-git"], capsys)
        assert code == 1
        assert "--category" in out

    def test_history(self, populated, capsys):
        """Test the audit trail"""
        code, out = run(["history", "--json"], capsys)
        assert code == 0
        events = [e["event"] for e in json.loads(out)]
        assert events == ["init", "onboard"]
