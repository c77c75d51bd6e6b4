"""
Shared utilities for Keyward CLI commands.
"""

import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from ..filelock import LockError
from ..keys import InvalidPrivateKeyError, KeySchemeError, read_identity
from ..lifecycle import Keyward
from ..reconcile import ReconciliationReport
from ..registry import RegistryError
from ..storage import StorageError


IDENTITY_ENV = "KEYWARD_IDENTITY"
IDENTITY_FILE_ENV = "KEYWARD_IDENTITY_FILE"
SOPS_KEY_ENV = "SOPS_AGE_KEY"
SOPS_KEY_FILE_ENV = "SOPS_AGE_KEY_FILE"
DEFAULT_AGE_KEYS = Path("~/.config/sops/age/keys.txt")


def _read_key_file(path: Path) -> Optional[str]:
    try:
        return read_identity(Path(path).expanduser().read_text())
    except OSError as e:
        print(f"Error: cannot read identity file {path}: {e}")
        sys.exit(1)
    except InvalidPrivateKeyError:
        print(f"Error: no private key found in {path}")
        sys.exit(1)


def resolve_identity(explicit_file: Optional[str] = None) -> Optional[str]:
    """
    Find the operator's private key.

    Order: --identity FILE, KEYWARD_IDENTITY, KEYWARD_IDENTITY_FILE,
    SOPS_AGE_KEY, SOPS_AGE_KEY_FILE, ~/.config/sops/age/keys.txt.
    """
    if explicit_file:
        return _read_key_file(Path(explicit_file))

    if os.environ.get(IDENTITY_ENV):
        return read_identity(os.environ[IDENTITY_ENV])
    if os.environ.get(IDENTITY_FILE_ENV):
        return _read_key_file(Path(os.environ[IDENTITY_FILE_ENV]))
    if os.environ.get(SOPS_KEY_ENV):
        return read_identity(os.environ[SOPS_KEY_ENV])
    if os.environ.get(SOPS_KEY_FILE_ENV):
        return _read_key_file(Path(os.environ[SOPS_KEY_FILE_ENV]))

    default = DEFAULT_AGE_KEYS.expanduser()
    if default.is_file():
        return _read_key_file(default)
    return None


@contextmanager
def exit_on_error():
    """Turn expected engine errors into 'Error: ...' and exit status 1."""
    try:
        yield
    except (RegistryError, StorageError, KeySchemeError, LockError) as e:
        print(f"Error: {e}")
        sys.exit(1)


def open_keyward(args, require_identity: bool = False) -> Keyward:
    """Open the project for the current directory or exit with an error."""
    with exit_on_error():
        identity = resolve_identity(getattr(args, "identity", None))
    if require_identity and not identity:
        print("Error: no operator identity found.")
        print(f"Pass --identity FILE or set {IDENTITY_ENV} / {SOPS_KEY_FILE_ENV}.")
        sys.exit(1)

    track = None
    if getattr(args, "skip_git", False):
        track = False

    with exit_on_error():
        return Keyward.open(identity=identity, track_changes=track)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_reconciliation(report: ReconciliationReport) -> None:
    """Human-readable reconciliation summary listing every failed document."""
    print(
        f"Reconciled {report.reconciled}/{report.attempted} document(s) "
        f"({report.changed} re-wrapped, {len(report.skipped)} ungoverned skipped)"
    )
    for warning in report.warnings:
        print(f"  Warning: {warning}")
    if report.failed:
        print(f"  {len(report.failed)} document(s) FAILED:")
        for outcome in report.failed:
            print(f"    ✗ {outcome.path} [{outcome.reason.value}] {outcome.message}")
    for path in report.stale:
        print(f"  Stale: {path}")


def print_warnings(warnings) -> None:
    for warning in warnings:
        print(f"Warning: {warning}")
