#!/usr/bin/env python3
"""
Ledger Audit Script
-------------------
Checks that every account balance matches its ledger, and that every failed
or cancelled job was refunded exactly once (completed jobs never).

Read-only: drift is reported, never repaired. Corrections go through an
explicit ledger adjustment with a reason.

Run daily via cron:
    0 4 * * * cd /path/to/vidgen && python scripts/ledger_audit.py >> /var/log/vidgen-audit.log 2>&1

Or manually:
    # All accounts
    python scripts/ledger_audit.py

    # One account, with details
    python scripts/ledger_audit.py --account acct_123 --verbose

    # First 100 accounts only
    python scripts/ledger_audit.py --limit 100

Exit codes: 0 clean, 1 drift found, 2 audit could not run.

Environment variables:
    DATABASE_URL: PostgreSQL connection string
"""
import argparse
import os
import sys
from datetime import datetime, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    parser = argparse.ArgumentParser(
        description="Audit account balances against the credit ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--account", type=str, help="Audit a single account id")
    parser.add_argument("--limit", type=int, default=None, help="Audit at most N accounts")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print every account, not only drifted ones")
    args = parser.parse_args()

    start_time = datetime.now(timezone.utc)
    print(f"[{start_time.isoformat()}] Ledger Audit")
    print()

    try:
        from vidgen.db import require_db
        from vidgen.services.ledger_audit_service import LedgerAuditService

        require_db()
        service = LedgerAuditService()

        if args.account:
            results = [service.audit_account(args.account)]
        else:
            results = service.audit_all(limit=args.limit)["results"]
    except Exception as e:
        print(f"ERROR: Ledger audit failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(2)

    drifted = 0
    for result in results:
        if result["issues"]:
            drifted += 1
        if result["issues"] or args.verbose:
            print_result(result)

    end_time = datetime.now(timezone.utc)
    duration = (end_time - start_time).total_seconds()
    print()
    print(f"  Accounts checked: {len(results)}")
    print(f"  With issues:      {drifted}")
    print(f"[{end_time.isoformat()}] Audit completed in {duration:.1f}s")

    if drifted:
        sys.exit(1)


def print_result(result):
    status = "DRIFT" if result["issues"] else "ok"
    print(f"  {result['account_id']}: {status}")
    if "balance" in result:
        print(f"    balance={result['balance']} ledger_sum={result['ledger_sum']} "
              f"snapshot={result['snapshot']} entries={result['entries']}")
    for issue in result["issues"]:
        print(f"    - {issue}")


if __name__ == "__main__":
    main()
