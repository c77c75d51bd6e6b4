"""
Key Registry for Keyward

The in-memory model of who may decrypt what:

- Principal: a named holder of exactly one public key, in exactly one group
- Group: a closed set of roles (developer, administrator, service)
- AccessRule: a path pattern (category) bound to the groups whose members
  must be recipients of every document matching it

A KeyRegistry is treated as a value. Mutations return a new registry so a
staged copy can be validated before it replaces the persisted artifact.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .keys import KeyScheme, fingerprint


REGISTRY_VERSION = 1

NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
NAME_MAX_LENGTH = 64


class RegistryError(Exception):
    """Base exception for registry errors"""
    pass


class ConfigError(RegistryError):
    """
    Rejected registry input.

    Always raised before any mutation is applied; the registry is untouched.
    """
    pass


class DuplicateNameError(ConfigError):
    """Raised when a principal name is already declared"""
    pass


class NotFoundError(ConfigError):
    """Raised when a principal does not exist"""
    pass


class InvalidKeyFormatError(ConfigError):
    """Raised when a public key fails the scheme's syntax check"""
    pass


class InvalidGroupError(ConfigError):
    """Raised when a group is not one of the closed set"""
    pass


class InvalidNameError(ConfigError):
    """Raised when a principal name is not lowercase alphanumeric/underscore"""
    pass


class DuplicateKeyError(ConfigError):
    """Raised when a public key is already held by another principal"""
    pass


class UnknownCategoryError(ConfigError):
    """Raised when no access rule has the requested category"""
    pass


class RegistryCorruptError(RegistryError):
    """Raised when the persisted registry cannot be parsed or is inconsistent"""
    pass


class InvariantViolation(RegistryError):
    """Raised when a staged registry breaks an invariant; nothing is persisted"""
    pass


class Group(Enum):
    """Closed set of principal groups. Declaration order is the persisted order."""
    ADMINISTRATOR = "administrator"
    DEVELOPER = "developer"
    SERVICE = "service"

    @classmethod
    def parse(cls, value: Any) -> "Group":
        """
        Parse a group from user input.

        Accepts the canonical names and the plural/legacy aliases used by
        older SOPS layouts (developers, administrators, ci).
        """
        if isinstance(value, Group):
            return value
        text = str(value or "").strip().lower()
        text = GROUP_ALIASES.get(text, text)
        for group in cls:
            if group.value == text:
                return group
        raise InvalidGroupError(
            f"Invalid group '{value}' (must be one of: "
            f"{', '.join(g.value for g in cls)})"
        )


GROUP_ALIASES = {
    "developers": "developer",
    "administrators": "administrator",
    "ci": "service",
}


def normalize_path(path: Any) -> str:
    """Relative document path with POSIX separators."""
    text = str(path).replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text


@dataclass(frozen=True)
class Principal:
    """A named holder of one public key, member of one group."""
    name: str
    group: Group
    public_key: str

    @property
    def key_fingerprint(self) -> str:
        return fingerprint(self.public_key)

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "group": self.group.value,
            "key": self.public_key,
        }


@dataclass(frozen=True)
class RemovedPrincipal:
    """What offboarding took out of the registry."""
    principal: Principal
    categories: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.principal.name

    @property
    def group(self) -> Group:
        return self.principal.group

    @property
    def public_key(self) -> str:
        return self.principal.public_key


@dataclass(frozen=True)
class AccessRule:
    """
    A category of documents and the groups that must be able to read it.

    `pattern` is a regular expression searched against the document's
    relative POSIX path (SOPS `path_regex` semantics).
    """
    category: str
    pattern: str
    groups: FrozenSet[Group] = field(default_factory=frozenset)

    def matches(self, path: Any) -> bool:
        return re.search(self.pattern, normalize_path(path)) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "pattern": self.pattern,
            "groups": [g.value for g in Group if g in self.groups],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessRule":
        return cls(
            category=str(data["category"]),
            pattern=str(data["pattern"]),
            groups=frozenset(Group.parse(g) for g in data.get("groups", [])),
        )


DEFAULT_RULES: Tuple[AccessRule, ...] = (
    AccessRule(
        "development",
        r"^secrets/dev/",
        frozenset({Group.ADMINISTRATOR, Group.DEVELOPER, Group.SERVICE}),
    ),
    AccessRule(
        "staging",
        r"^secrets/staging/",
        frozenset({Group.ADMINISTRATOR, Group.SERVICE}),
    ),
    AccessRule(
        "production",
        r"^secrets/production/",
        frozenset({Group.ADMINISTRATOR, Group.SERVICE}),
    ),
    AccessRule(
        "examples",
        r"^examples/",
        frozenset({Group.ADMINISTRATOR, Group.DEVELOPER}),
    ),
)


def validate_name(name: str) -> str:
    """Validate a principal name; returns it unchanged."""
    if not name:
        raise InvalidNameError("Principal name cannot be empty")
    if len(name) > NAME_MAX_LENGTH:
        raise InvalidNameError(
            f"Principal name too long: {len(name)} > {NAME_MAX_LENGTH} characters"
        )
    if not NAME_PATTERN.match(name):
        raise InvalidNameError(
            f"Invalid principal name '{name}'. "
            "Use only lowercase letters, numbers, and underscores."
        )
    return name


class KeyRegistry:
    """
    Principals plus access rules, addressable as one versioned artifact.

    Usage:
        registry = KeyRegistry()
        registry = registry.with_principal("alice", Group.DEVELOPER, key, scheme)
        keys = registry.recipient_keys("secrets/dev/database.enc.yaml")
    """

    def __init__(
        self,
        principals: Iterable[Principal] = (),
        rules: Iterable[AccessRule] = DEFAULT_RULES,
        version: int = REGISTRY_VERSION,
    ):
        self.version = version
        self._rules: Tuple[AccessRule, ...] = tuple(rules)
        self._principals: Dict[str, Principal] = {}
        for principal in principals:
            if principal.name in self._principals:
                raise DuplicateNameError(f"Principal '{principal.name}' declared twice")
            self._principals[principal.name] = principal

    def __contains__(self, name: str) -> bool:
        return name in self._principals

    def __len__(self) -> int:
        return len(self._principals)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyRegistry):
            return NotImplemented
        return (
            self._principals == other._principals
            and self._rules == other._rules
            and self.version == other.version
        )

    def __repr__(self) -> str:
        return f"KeyRegistry(principals={len(self)}, rules={len(self._rules)})"

    @property
    def principals(self) -> List[Principal]:
        """All principals, sorted by name."""
        return [self._principals[n] for n in sorted(self._principals)]

    @property
    def rules(self) -> Tuple[AccessRule, ...]:
        return self._rules

    @property
    def categories(self) -> List[str]:
        return [rule.category for rule in self._rules]

    def get(self, name: str) -> Optional[Principal]:
        return self._principals.get(name)

    def find_by_key(self, public_key: str) -> Optional[Principal]:
        """Principal holding this public key, if any."""
        public_key = public_key.strip()
        for principal in self._principals.values():
            if principal.public_key == public_key:
                return principal
        return None

    def rule(self, category: str) -> Optional[AccessRule]:
        for rule in self._rules:
            if rule.category == category:
                return rule
        return None

    def scope(self, group: Group) -> List[AccessRule]:
        """Ordered access scope of a group: the rules it is bound to."""
        return [rule for rule in self._rules if group in rule.groups]

    def list_by_group(self, group: Group) -> List[Principal]:
        group = Group.parse(group)
        return [p for p in self.principals if p.group == group]

    def is_governed(self, path: Any) -> bool:
        return any(rule.matches(path) for rule in self._rules)

    def category_of(self, path: Any) -> Optional[str]:
        """First category whose pattern matches the path."""
        for rule in self._rules:
            if rule.matches(path):
                return rule.category
        return None

    def documents_in(self, category: str, paths: Iterable[Any]) -> List[str]:
        """
        Paths matching the rule of `category`, in the order given.

        Raises:
            UnknownCategoryError: If no rule has that category
        """
        rule = self.rule(category)
        if rule is None:
            raise UnknownCategoryError(
                f"Unknown category '{category}' (known: {', '.join(self.categories) or 'none'})"
            )
        return [normalize_path(p) for p in paths if rule.matches(p)]

    def categories_for(self, principal: Principal) -> List[str]:
        return [rule.category for rule in self.scope(principal.group)]

    def resolve_recipients(self, path: Any) -> FrozenSet[Principal]:
        """
        Principals that must be able to decrypt the document at `path`.

        A principal is a recipient iff the path matches at least one rule in
        its group's scope.
        """
        groups = set()
        for rule in self._rules:
            if rule.matches(path):
                groups.update(rule.groups)
        return frozenset(p for p in self._principals.values() if p.group in groups)

    def recipient_keys(self, path: Any) -> List[str]:
        """Sorted public keys of resolve_recipients(path)."""
        return sorted(p.public_key for p in self.resolve_recipients(path))

    def rule_recipients(self, rule: AccessRule) -> List[str]:
        """Sorted names of the principals an access rule references."""
        return sorted(p.name for p in self._principals.values() if p.group in rule.groups)

    def with_principal(
        self,
        name: str,
        group: Any,
        public_key: str,
        scheme: KeyScheme,
    ) -> "KeyRegistry":
        """
        Staged copy of the registry with a new principal.

        Raises:
            InvalidNameError, InvalidGroupError, InvalidKeyFormatError,
            DuplicateNameError, DuplicateKeyError
        """
        validate_name(name)
        group = Group.parse(group)
        public_key = (public_key or "").strip()
        if not scheme.is_valid_public_key(public_key):
            raise InvalidKeyFormatError(
                f"Invalid {scheme.name} public key format: {public_key[:24]}"
            )
        if name in self._principals:
            raise DuplicateNameError(f"Principal '{name}' already exists")
        holder = self.find_by_key(public_key)
        if holder is not None:
            raise DuplicateKeyError(
                f"Public key is already registered to '{holder.name}'"
            )

        principals = list(self._principals.values())
        principals.append(Principal(name=name, group=group, public_key=public_key))
        return KeyRegistry(principals, self._rules, self.version)

    def without_principal(self, name: str) -> Tuple["KeyRegistry", RemovedPrincipal]:
        """
        Staged copy of the registry without `name`, plus what was removed.

        Rule references are derived from membership, so dropping the
        principal drops every reference to it.

        Raises:
            NotFoundError: If no such principal exists
        """
        principal = self._principals.get(name)
        if principal is None:
            raise NotFoundError(f"Principal '{name}' not found in registry")

        remaining = [p for p in self._principals.values() if p.name != name]
        removed = RemovedPrincipal(
            principal=principal,
            categories=tuple(self.categories_for(principal)),
        )
        return KeyRegistry(remaining, self._rules, self.version), removed

    def to_dict(self) -> Dict[str, Any]:
        """Structured form of the persisted artifact."""
        return {
            "version": self.version,
            "principals": {
                group.value: [
                    {"name": p.name, "key": p.public_key}
                    for p in self.list_by_group(group)
                ]
                for group in Group
            },
            "rules": [
                dict(rule.to_dict(), recipients=self.rule_recipients(rule))
                for rule in self._rules
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRegistry":
        """
        Build a registry from its persisted structure.

        Raises:
            RegistryCorruptError: On malformed structure, duplicate names, or
                rule references that do not match declared principals
        """
        if not isinstance(data, dict):
            raise RegistryCorruptError("Registry must be a mapping")

        try:
            principals = []
            for group_name, members in (data.get("principals") or {}).items():
                group = Group.parse(group_name)
                for member in members or []:
                    principals.append(Principal(
                        name=str(member["name"]),
                        group=group,
                        public_key=str(member["key"]),
                    ))
            rules = [AccessRule.from_dict(r) for r in data.get("rules") or []]
            registry = cls(principals, rules, int(data.get("version", REGISTRY_VERSION)))
        except ConfigError as e:
            raise RegistryCorruptError(f"Invalid registry: {e}")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RegistryCorruptError(f"Malformed registry entry: {e}")

        if not rules:
            raise RegistryCorruptError("Registry declares no access rules")

        for raw, rule in zip(data.get("rules") or [], rules):
            if "recipients" not in raw:
                continue
            declared = sorted(str(r) for r in raw.get("recipients") or [])
            dangling = [r for r in declared if r not in registry]
            if dangling:
                raise RegistryCorruptError(
                    f"Rule '{rule.category}' references undeclared principal(s): "
                    f"{', '.join(dangling)}"
                )
            if declared != registry.rule_recipients(rule):
                raise RegistryCorruptError(
                    f"Rule '{rule.category}' recipients do not match its groups"
                )

        return registry


def check_invariants(registry: KeyRegistry, scheme: KeyScheme) -> None:
    """
    Verify every registry invariant.

    Raises:
        InvariantViolation: Describing every problem found
    """
    problems = []

    seen_keys: Dict[str, str] = {}
    for principal in registry.principals:
        if not NAME_PATTERN.match(principal.name):
            problems.append(f"invalid principal name '{principal.name}'")
        if not scheme.is_valid_public_key(principal.public_key):
            problems.append(f"invalid {scheme.name} key for '{principal.name}'")
        other = seen_keys.get(principal.public_key)
        if other:
            problems.append(f"'{principal.name}' shares a public key with '{other}'")
        seen_keys[principal.public_key] = principal.name

    categories = set()
    for rule in registry.rules:
        if rule.category in categories:
            problems.append(f"duplicate category '{rule.category}'")
        categories.add(rule.category)
        if not rule.groups:
            problems.append(f"rule '{rule.category}' has no groups")
        try:
            re.compile(rule.pattern)
        except re.error as e:
            problems.append(f"rule '{rule.category}' pattern is invalid: {e}")
        for name in registry.rule_recipients(rule):
            if name not in registry:
                problems.append(f"rule '{rule.category}' references unknown '{name}'")

    if problems:
        raise InvariantViolation("; ".join(problems))
