"""
Access CLI commands for Keyward.

Commands: verify, reconcile, rotate, history
"""

import sys
from pathlib import Path

from ..keys import InvalidPrivateKeyError, read_identity
from .utils import (
    exit_on_error,
    open_keyward,
    print_json,
    print_reconciliation,
    resolve_identity,
)


def cmd_verify(args):
    """Report what a private key can decrypt"""
    if args.key_file:
        try:
            private_key = read_identity(Path(args.key_file).read_text())
        except OSError as e:
            print(f"Error: cannot read key file: {e}")
            sys.exit(1)
        except InvalidPrivateKeyError as e:
            print(f"Error: {e}")
            sys.exit(1)
    else:
        with exit_on_error():
            private_key = resolve_identity(args.identity)
        if not private_key:
            print("Error: no private key to verify.")
            print("Pass a key file, --identity FILE, or set SOPS_AGE_KEY_FILE.")
            sys.exit(1)

    kw = open_keyward(args)
    with exit_on_error():
        report = kw.verify(private_key)

    if args.json:
        print_json(report.to_dict())
        return

    print(f"Public key: {report.public_key or '(could not derive)'}")
    if report.principal:
        print(f"Registered as: {report.principal.name} ({report.principal.group.value})")
    else:
        print("Registered as: (not in registry)")
    print()

    for access in report.categories:
        marker = "✓" if access.accessible else "✗"
        print(f"  {marker} {access.category:<12} {access.accessible}/{access.total}")

    for failure in report.errors:
        print(f"  ? {failure.path} [{failure.reason}] {failure.message}")

    if report.inconsistencies:
        print("\nInconsistencies with the registry:")
        for item in report.inconsistencies:
            print(f"  ! {item.path}: {item.description}")
        print("Run 'keyward reconcile' to converge documents to the registry.")

    for note in report.notes:
        print(f"Note: {note}")


def cmd_reconcile(args):
    """Re-wrap every governed document for the current registry"""
    kw = open_keyward(args, require_identity=not args.dry_run)
    with exit_on_error():
        report = kw.reconcile(dry_run=args.dry_run)

    if args.json:
        print_json(report.to_dict())
    else:
        print_reconciliation(report)

    if not report.ok or (args.dry_run and report.stale):
        sys.exit(1)


def cmd_rotate(args):
    """Rotate secret values in documents without changing recipients"""
    if not args.paths and not args.category:
        print("Error: give document paths or --category NAME.")
        sys.exit(1)

    kw = open_keyward(args, require_identity=True)

    paths = []
    for raw in args.paths:
        candidate = Path(raw)
        if candidate.is_absolute() or candidate.exists():
            paths.append(kw.project.relative(candidate) if kw.project else raw)
        else:
            paths.append(raw)

    with exit_on_error():
        records, failures = kw.rotate(
            paths, field_selectors=args.field, reason=args.reason, category=args.category
        )

    if args.json:
        print_json({
            "rotated": [r.to_dict() for r in records],
            "failed": [f.to_dict() for f in failures],
        })
    elif not records and not failures:
        print("No documents to rotate.")
    else:
        for record in records:
            print(record.log_line())
            if record.manual_update_required:
                print("  Warning: generic document; update secret values manually")
            print(f"  Backup: {record.backup}")
        for failure in failures:
            print(f"✗ {failure.path} [{failure.kind}] {failure.message}")

    if failures:
        sys.exit(1)


def cmd_history(args):
    """Show recent audit log entries"""
    kw = open_keyward(args)
    if kw.audit is None:
        print("No audit log.")
        return

    entries = kw.audit.tail(args.limit)
    if args.json:
        print_json([e.to_dict() for e in entries])
        return

    if not entries:
        print("No audit entries yet.")
        return

    for entry in entries:
        who = entry.principal or "-"
        fp = entry.key_fingerprint or "-"
        print(f"{entry.timestamp[:19]}  {entry.event.value:<10} {who:<20} {fp:<16} {entry.outcome.value}")


def register_access_commands(subparsers):
    """Register access commands with the argument parser."""
    # verify
    verify_parser = subparsers.add_parser("verify", help="Check what a private key can decrypt")
    verify_parser.add_argument("key_file", nargs="?", help="Private key file (default: operator identity)")
    verify_parser.add_argument("--identity", help="Operator private key file")
    verify_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    verify_parser.set_defaults(func=cmd_verify)

    # reconcile
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Re-wrap governed documents to match the registry"
    )
    reconcile_parser.add_argument(
        "--dry-run", action="store_true", help="Only report stale documents"
    )
    reconcile_parser.add_argument("--identity", help="Operator private key file")
    reconcile_parser.add_argument("--skip-git", action="store_true", help="Do not commit changes")
    reconcile_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # rotate
    rotate_parser = subparsers.add_parser("rotate", help="Rotate secret values in documents")
    rotate_parser.add_argument("paths", nargs="*", help="Documents to rotate")
    rotate_parser.add_argument(
        "--category", help="Rotate every document in this category (e.g. production)"
    )
    rotate_parser.add_argument(
        "--field", action="append", help="Only rotate fields matching this glob (repeatable)"
    )
    rotate_parser.add_argument("--reason", default="manual rotation", help="Reason recorded in the document")
    rotate_parser.add_argument("--identity", help="Operator private key file")
    rotate_parser.add_argument("--skip-git", action="store_true", help="Do not commit changes")
    rotate_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    rotate_parser.set_defaults(func=cmd_rotate)

    # history
    history_parser = subparsers.add_parser("history", help="Show the audit log")
    history_parser.add_argument("-n", "--limit", type=int, default=20, help="Number of entries")
    history_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    history_parser.set_defaults(func=cmd_history)
