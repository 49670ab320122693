#!/usr/bin/env python3
"""
Outbox / Queue Report
---------------------
Prints outbox relay health and work queue counts, and lists outbox records
that ran out of relay attempts (their jobs are paid for but never reached
the queue).

Usage:
    python scripts/outbox_report.py
    python scripts/outbox_report.py --limit 20

Exit codes: 0 healthy, 1 exhausted records present, 2 report could not run.
"""
import argparse
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    parser = argparse.ArgumentParser(description="Report outbox relay and work queue state")
    parser.add_argument("--limit", type=int, default=50, help="Max exhausted records to list (default: 50)")
    args = parser.parse_args()

    try:
        from vidgen.config import config
        from vidgen.db import require_db
        from vidgen.services.outbox_service import OutboxStore
        from vidgen.services.work_queue import PgWorkQueue

        require_db()
        outbox = OutboxStore(max_attempts=config.OUTBOX_MAX_ATTEMPTS)
        outbox_stats = outbox.get_stats()
        queue_stats = PgWorkQueue(max_attempts=config.QUEUE_MAX_ATTEMPTS).stats()
        exhausted = outbox.list_exhausted(args.limit)
    except Exception as e:
        print(f"ERROR: Report failed: {e}")
        sys.exit(2)

    print("Outbox:")
    for key, value in outbox_stats.items():
        print(f"  {key}: {value}")
    print()
    print("Work queue:")
    for key, value in queue_stats.items():
        print(f"  {key}: {value}")

    if exhausted:
        print()
        print(f"Exhausted outbox records ({len(exhausted)}):")
        for record in exhausted:
            print(f"  {record['job_id']} attempts={record['attempts']} "
                  f"last_attempt_at={record['last_attempt_at']} error={record['last_error']}")
        sys.exit(1)


if __name__ == "__main__":
    main()
