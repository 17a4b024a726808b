#!/usr/bin/env python3
"""
Audit Ledger Bundle Verifier

Verifies an exported organization bundle independently.
No server or database connection required; verification is cryptographic.

Usage:
    python verify.py bundle.json
    python verify.py bundle.json --verbose
    python verify.py bundle.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, link or proof mismatch
    2 - INCOMPLETE: Missing proofs or entries
    3 - INVALID_FORMAT: Bundle structure invalid
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from auditledger.core.bundle import BundleReport, BundleResult, BundleVerifier


EXIT_CODES = {
    BundleResult.VERIFIED: 0,
    BundleResult.TAMPERED: 1,
    BundleResult.INCOMPLETE: 2,
    BundleResult.INVALID_FORMAT: 3,
}

BANNERS = {
    BundleResult.VERIFIED: "[VERIFIED] - All checks passed",
    BundleResult.TAMPERED: "[TAMPERED] - Hash, link or proof mismatch detected",
    BundleResult.INCOMPLETE: "[INCOMPLETE] - Missing required data",
    BundleResult.INVALID_FORMAT: "[INVALID_FORMAT] - Bundle structure invalid",
}


def print_report(report: BundleReport, json_output: bool = False, verbose: bool = False):
    """Print verification report."""
    if json_output:
        print(json.dumps(report.to_dict(), indent=2))
        return

    print("\n" + "=" * 60)
    print(f"  {BANNERS[report.result]}")
    print("=" * 60)

    print(f"\nOrganization: {report.organization_id}")
    print(f"Entries:      {report.entry_count}")
    if report.broken_at_seq is not None:
        print(f"Broken at:    seq {report.broken_at_seq}")

    if report.checks_passed and (verbose or report.result == BundleResult.VERIFIED):
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def main():
    parser = argparse.ArgumentParser(
        description="Verify an Audit Ledger export bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=INCOMPLETE, 3=INVALID_FORMAT"
    )
    parser.add_argument("bundle", type=str, help="Path to the bundle JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show every passed check")
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args()

    bundle_path = Path(args.bundle)
    if not bundle_path.exists():
        print(f"ERROR: File not found: {bundle_path}")
        return 3

    try:
        with open(bundle_path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return 3
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        return 3

    report = BundleVerifier(bundle).verify()
    print_report(report, json_output=args.json, verbose=args.verbose)
    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())
