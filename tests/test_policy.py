"""
Tests for the transactional policy mutator
"""

import threading

import pytest

import keyward.policy as policy_module
from keyward.policy import PolicyMutator
from keyward.registry import (
    DuplicateKeyError,
    DuplicateNameError,
    Group,
    InvalidKeyFormatError,
    InvariantViolation,
    NotFoundError,
)
from keyward.storage import FileConfigStore, MemoryConfigStore, render_registry


@pytest.fixture
def mutator(config_store, scheme):
    return PolicyMutator(config_store, scheme)


class TestAddPrincipal:
    """Tests for PolicyMutator.add_principal"""

    def test_persists(self, mutator, config_store, alice_key):
        """Test the new principal is saved"""
        registry, principal = mutator.add_principal("alice", "developer", alice_key.public_key)
        assert principal.group == Group.DEVELOPER
        assert config_store.load() == registry
        assert "alice" in config_store.load()
        assert config_store.saves == 1

    @pytest.mark.parametrize("name,group,key_attr,error", [
        ("admin1", "developer", "alice", DuplicateNameError),
        ("alice", "developer", "admin", DuplicateKeyError),
        ("alice", "developer", None, InvalidKeyFormatError),
    ])
    def test_rejected_input_leaves_store_untouched(
        self, mutator, config_store, admin_key, alice_key, name, group, key_attr, error
    ):
        """Test rejected input never reaches the store"""
        keys = {"alice": alice_key.public_key, "admin": admin_key.public_key, None: "age1bad"}
        before = config_store.text
        with pytest.raises(error):
            mutator.add_principal(name, group, keys[key_attr])
        assert config_store.text == before
        assert config_store.saves == 0

    def test_invariant_violation_not_persisted(self, mutator, config_store, alice_key, monkeypatch):
        """Test a staged registry failing the final check is discarded"""
        def broken(registry, scheme):
            raise InvariantViolation("synthetic")

        monkeypatch.setattr(policy_module, "check_invariants", broken)
        before = config_store.text
        with pytest.raises(InvariantViolation):
            mutator.add_principal("alice", "developer", alice_key.public_key)
        assert config_store.text == before
        assert config_store.saves == 0


class TestRemovePrincipal:
    """Tests for PolicyMutator.remove_principal"""

    def test_persists(self, mutator, config_store, alice_key):
        """Test removal is saved and reports the categories lost"""
        mutator.add_principal("alice", "developer", alice_key.public_key)
        registry, removed = mutator.remove_principal("alice")
        assert "alice" not in config_store.load()
        assert removed.categories == ("development", "examples")
        assert "alice" not in render_registry(registry)

    def test_unknown(self, mutator, config_store):
        """Test removing a missing principal"""
        with pytest.raises(NotFoundError):
            mutator.remove_principal("nobody")
        assert config_store.saves == 0


class TestConcurrentMutation:
    """Tests for serialized mutations"""

    def test_memory_store_no_lost_updates(self, scheme, make_key):
        """Test concurrent adds on one store all land"""
        store = MemoryConfigStore()
        mutator = PolicyMutator(store, scheme)
        keys = [make_key() for _ in range(8)]
        errors = []

        def add(i):
            try:
                mutator.add_principal(f"user{i}", "developer", keys[i].public_key)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.load()) == 8

    def test_file_store_no_lost_updates(self, tmp_path, base_registry, scheme, make_key):
        """Test concurrent adds through separate file stores all land"""
        path = tmp_path / "registry.yaml"
        seed = FileConfigStore(path)
        with seed.locked():
            seed.save(base_registry)

        keys = [make_key() for _ in range(6)]
        errors = []

        def add(i):
            try:
                PolicyMutator(FileConfigStore(path), scheme).add_principal(
                    f"user{i}", "service", keys[i].public_key
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(FileConfigStore(path).load()) == 7
