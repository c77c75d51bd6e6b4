"""
Policy Mutator for Keyward

Applies add/remove-principal operations to the persisted Key Registry.

Every mutation is one load -> stage -> check -> persist cycle under the
registry's exclusive lock. The staged registry is validated in full before
anything is written, so observers see either the old or the new artifact.
"""

from typing import Any, Tuple

from .keys import KeyScheme
from .logging import get_logger
from .registry import (
    InvariantViolation,
    KeyRegistry,
    Principal,
    RemovedPrincipal,
    check_invariants,
)
from .storage import ConfigStore


logger = get_logger()


class PolicyMutator:
    """
    Transactional add/remove of principals.

    Usage:
        mutator = PolicyMutator(store, get_scheme("age"))
        registry, principal = mutator.add_principal("alice", "developer", key)
        registry, removed = mutator.remove_principal("alice")
    """

    def __init__(self, store: ConfigStore, scheme: KeyScheme):
        self.store = store
        self.scheme = scheme

    def _commit(self, staged: KeyRegistry, operation: str) -> None:
        try:
            check_invariants(staged, self.scheme)
        except InvariantViolation as e:
            logger.critical(
                f"Refusing to persist registry after {operation}: {e}",
                registry=self.store.location,
            )
            raise
        self.store.save(staged)

    def add_principal(
        self,
        name: str,
        group: Any,
        public_key: str,
    ) -> Tuple[KeyRegistry, Principal]:
        """
        Declare a new principal.

        Returns:
            The persisted registry and the new principal

        Raises:
            ConfigError: On invalid input (registry untouched)
            InvariantViolation: If the staged registry is inconsistent
        """
        with self.store.locked(owner=f"onboard:{name}"):
            current = self.store.load()
            staged = current.with_principal(name, group, public_key, self.scheme)
            self._commit(staged, f"adding '{name}'")

        principal = staged.get(name)
        logger.info(
            f"Added principal '{name}' ({principal.group.value})",
            principal=name,
            key_fingerprint=principal.key_fingerprint,
        )
        return staged, principal

    def remove_principal(self, name: str) -> Tuple[KeyRegistry, RemovedPrincipal]:
        """
        Remove a principal and every rule reference to it.

        Returns:
            The persisted registry and what was removed

        Raises:
            NotFoundError: If no such principal exists
            InvariantViolation: If the staged registry is inconsistent
        """
        with self.store.locked(owner=f"offboard:{name}"):
            current = self.store.load()
            staged, removed = current.without_principal(name)
            self._commit(staged, f"removing '{name}'")

        logger.info(
            f"Removed principal '{name}' ({removed.group.value})",
            principal=name,
            categories=list(removed.categories),
        )
        return staged, removed
