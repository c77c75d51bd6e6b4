"""
Registry CLI commands for Keyward.

Commands: init, onboard, offboard, list
"""

import sys
from pathlib import Path

from ..keys import SCHEMES
from ..lifecycle import Keyward
from ..registry import Group
from ..storage import ProjectExistsError
from .utils import (
    exit_on_error,
    open_keyward,
    print_json,
    print_reconciliation,
    print_warnings,
)


def cmd_init(args):
    """Initialize a new Keyward project"""
    project_name = args.name or Path.cwd().name

    with exit_on_error():
        try:
            Keyward.init(Path.cwd(), project_name, key_scheme=args.scheme, force=args.force)
        except ProjectExistsError as e:
            print(f"Error: {e}")
            print("Use --force to reinitialize.")
            sys.exit(1)

    print(f"Initialized keyward project: {project_name}")
    print(f"  Key scheme: {args.scheme}")
    print("  Created .keyward/ with config.json and registry.yaml")
    print("\nNext: keyward onboard --name <name> --group <group> --key <public key>")


def cmd_onboard(args):
    """Add a principal and re-wrap governed documents"""
    public_key = args.key
    if args.key_file:
        try:
            public_key = Path(args.key_file).read_text().strip()
        except OSError as e:
            print(f"Error: cannot read key file: {e}")
            sys.exit(1)

    kw = open_keyward(args)
    with exit_on_error():
        result = kw.onboard(
            args.name,
            args.group,
            public_key=public_key,
            generate=args.generate_key,
        )

    if args.json:
        data = result.to_dict()
        if result.generated_private_key:
            data["generated_private_key"] = result.generated_private_key
        print_json(data)
    else:
        principal = result.principal
        print(f"Onboarded {principal.name} ({principal.group.value})")
        print(f"  Public key: {principal.public_key}")
        print(f"  Fingerprint: {principal.key_fingerprint}")
        print_reconciliation(result.reconciliation)
        if result.change_recorded:
            print("  Change committed to git")
        print_warnings(result.warnings)

    if result.generated_private_key and not args.json:
        print("\nGenerated private key (shown once, store it securely; it is not saved):")
        print(result.generated_private_key)

    if not result.ok:
        sys.exit(1)


def cmd_offboard(args):
    """Remove a principal, re-wrap documents and optionally rotate secrets"""
    kw = open_keyward(args, require_identity=args.rotate_secrets)
    with exit_on_error():
        result = kw.offboard(args.name, rotate_affected=args.rotate_secrets)

    if args.json:
        print_json(result.to_dict())
    else:
        print(f"Offboarded {result.removed.name} ({result.removed.group.value})")
        print(f"  Affected documents: {len(result.affected_documents)}")
        print_reconciliation(result.reconciliation)

        if result.residual_access:
            print("\n  SECURITY: the removed key may still decrypt:")
            for path in result.residual_access:
                print(f"    ! {path}")

        if args.rotate_secrets:
            print(f"\n  Rotated {len(result.rotation_records)} document(s)")
            for record in result.rotation_records:
                note = " (manual update required)" if record.manual_update_required else ""
                print(f"    ✓ {record.path} [{record.classification.value}]{note}")
            for failure in result.rotation_failures:
                print(f"    ✗ {failure.path} [{failure.kind}] {failure.message}")
            if result.rotation_skipped:
                print(f"  Not rotated (outside rotation categories): {len(result.rotation_skipped)}")
        elif result.affected_documents:
            print("\n  Secrets readable by the removed principal were not rotated.")
            print("  Consider: keyward offboard ... --rotate-secrets, or keyward rotate <paths>")

        if result.change_recorded:
            print("  Change committed to git")
        print_warnings(result.warnings)

    if not result.ok:
        sys.exit(1)


def cmd_list(args):
    """List principals by group and the access rules"""
    kw = open_keyward(args)
    with exit_on_error():
        listing = kw.list_registry()

    if args.json:
        print_json(listing.to_dict())
        return

    print(f"Principals ({listing.total}):\n")
    for group, members in listing.principals_by_group.items():
        print(f"  {group.value} ({len(members)}):")
        if not members:
            print("    (none)")
        for p in members:
            access = ", ".join(listing.access.get(p.name, [])) or "-"
            print(f"    {p.name:<20} {p.key_fingerprint}  access: {access}")
        print()

    print("Access rules:\n")
    for rule in listing.rules:
        print(f"  {rule.category:<12} {rule.pattern:<24} groups: {', '.join(rule.groups)}")
        print(f"  {'':<12} recipients: {', '.join(rule.recipients) or '(none)'}")


def register_registry_commands(subparsers):
    """Register registry commands with the argument parser."""
    group_choices = [g.value for g in Group]

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a new keyward project")
    init_parser.add_argument("name", nargs="?", help="Project name (default: directory name)")
    init_parser.add_argument(
        "--scheme", default="age", choices=sorted(SCHEMES), help="Key scheme (default: age)"
    )
    init_parser.add_argument("--force", action="store_true", help="Reinitialize an existing project")
    init_parser.set_defaults(func=cmd_init)

    # onboard
    onboard_parser = subparsers.add_parser("onboard", help="Add a principal")
    onboard_parser.add_argument("--name", required=True, help="Principal name (a-z, 0-9, _)")
    onboard_parser.add_argument(
        "--group", required=True,
        help=f"Group: {', '.join(group_choices)} (aliases: developers, administrators, ci)",
    )
    key_source = onboard_parser.add_mutually_exclusive_group(required=True)
    key_source.add_argument("--key", help="Public key")
    key_source.add_argument("--key-file", help="File containing the public key")
    key_source.add_argument(
        "--generate-key", action="store_true", help="Generate a key pair (private key shown once)"
    )
    onboard_parser.add_argument("--identity", help="Operator private key file")
    onboard_parser.add_argument("--skip-git", action="store_true", help="Do not commit changes")
    onboard_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    onboard_parser.set_defaults(func=cmd_onboard)

    # offboard
    offboard_parser = subparsers.add_parser("offboard", help="Remove a principal")
    offboard_parser.add_argument("--name", required=True, help="Principal name")
    offboard_parser.add_argument(
        "--rotate-secrets", action="store_true",
        help="Rotate affected documents in the rotation categories",
    )
    offboard_parser.add_argument("--identity", help="Operator private key file")
    offboard_parser.add_argument("--skip-git", action="store_true", help="Do not commit changes")
    offboard_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    offboard_parser.set_defaults(func=cmd_offboard)

    # list
    list_parser = subparsers.add_parser("list", help="List principals and access rules")
    list_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    list_parser.set_defaults(func=cmd_list)
