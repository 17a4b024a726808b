#!/usr/bin/env python3
"""
Audit Ledger Management CLI

Commands for operating the ledger:
- init-db: Create tables, sequence and immutability triggers
- verify-chain: Verify one or every organization's chain
- checkpoint: Anchor committed history into a new root
- list-roots: Show existing roots
- backfill: Chain legacy entries (one-time migration)
- export-bundle: Write an organization's self-verifiable bundle
- health-check: Run health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage verify-chain --org 6f1c...
    python -m tools.manage export-bundle --org 6f1c... -o bundle.json
"""

import argparse
import json
import sys
from pathlib import Path
from uuid import UUID

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_db(args):
    """Create the schema in the configured PostgreSQL database."""
    from auditledger.shared import get_ledger_store

    store = get_ledger_store()
    if not hasattr(store, "init_schema"):
        print("Error: no database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    store.init_schema()
    print("[OK] Schema initialized")
    return 0


def cmd_verify_chain(args):
    """Verify ledger chain integrity."""
    from auditledger.shared import get_verifier

    verifier = get_verifier()
    if args.org:
        results = [verifier.verify(UUID(args.org), args.from_seq, args.to_seq)]
    else:
        results = verifier.verify_all()

    if not results:
        print("No chained entries found.")
        return 0

    failed = 0
    for result in results:
        if result.ok:
            print(f"[OK]   {result.organization_id}: {result.entries_checked} entries")
        else:
            failed += 1
            print(
                f"[FAIL] {result.organization_id}: broken at seq {result.broken_at_seq} "
                f"({result.reason})"
            )

    print(f"\n{len(results) - failed}/{len(results)} chains intact")
    return 1 if failed else 0


def cmd_checkpoint(args):
    """Anchor everything committed since the last root."""
    from auditledger.shared import get_anchor_service

    root = get_anchor_service().checkpoint()
    if root is None:
        print("Nothing new to anchor.")
        return 0

    print(f"Created root {root.id}")
    print(f"  Window:  {root.first_seq}-{root.last_seq} ({root.entry_count} entries)")
    print(f"  Root:    {root.root_hash}")
    return 0


def cmd_list_roots(args):
    """List roots overlapping an optional seq range."""
    from auditledger.shared import get_anchor_service

    roots = get_anchor_service().get_roots(args.first_seq, args.last_seq)
    if not roots:
        print("No roots.")
        return 0

    for root in roots:
        print(
            f"{root.first_seq:>10}-{root.last_seq:<10} {root.entry_count:>6} entries  "
            f"{root.root_hash[:16]}...  {root.created_at.isoformat()}"
        )
    return 0


def cmd_backfill(args):
    """Chain every legacy entry (rows written before hash chaining)."""
    from auditledger.core import BackfillOrderError, backfill_legacy_entries
    from auditledger.shared import get_ledger_store

    try:
        count = backfill_legacy_entries(get_ledger_store())
    except BackfillOrderError as e:
        print(f"[FAIL] Backfill refused, nothing written: {e}")
        return 1
    print(f"Backfilled {count} legacy entries")
    return 0


def cmd_export_bundle(args):
    """Export an organization's chain, roots and proofs to JSON."""
    from auditledger.core import export_bundle
    from auditledger.shared import get_ledger_store

    bundle = export_bundle(get_ledger_store(), UUID(args.org))
    output = Path(args.output or f"ledger_{args.org}.json")
    with open(output, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2)

    print(f"Exported {bundle['_meta']['entry_count']} entries to {output}")
    if not bundle["_meta"]["chain_valid_at_export"]:
        print("[WARN] Chain was already broken at export time")
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from auditledger.observability import check_health
    from auditledger.shared import get_ledger_store, get_verifier

    print("=== Audit Ledger Health Check ===\n")
    status = check_health(store=get_ledger_store(), verifier=get_verifier())

    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        print(f"{marker} {name}")
        for key, value in check.items():
            if key != "status":
                print(f"    {key}: {value}")

    print(f"\n=== Health Check Complete ({status.duration_ms} ms) ===")
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="Audit Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create database schema")

    p_verify = subparsers.add_parser("verify-chain", help="Verify ledger chain integrity")
    p_verify.add_argument("--org", help="Organization id (default: all)")
    p_verify.add_argument("--from-seq", type=int, help="First seq to verify")
    p_verify.add_argument("--to-seq", type=int, help="Last seq to verify")

    subparsers.add_parser("checkpoint", help="Anchor committed history into a root")

    p_roots = subparsers.add_parser("list-roots", help="List roots")
    p_roots.add_argument("--first-seq", type=int)
    p_roots.add_argument("--last-seq", type=int)

    subparsers.add_parser("backfill", help="Chain legacy entries (one-time)")

    p_export = subparsers.add_parser("export-bundle", help="Export a verifiable bundle")
    p_export.add_argument("--org", required=True, help="Organization id")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_<org>.json)")

    subparsers.add_parser("health-check", help="Run comprehensive health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    from auditledger.observability import setup_logging
    setup_logging()

    commands = {
        "init-db": cmd_init_db,
        "verify-chain": cmd_verify_chain,
        "checkpoint": cmd_checkpoint,
        "list-roots": cmd_list_roots,
        "backfill": cmd_backfill,
        "export-bundle": cmd_export_bundle,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
