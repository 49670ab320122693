"""
Ledger Audit Service - detects drift between balances, ledger and jobs.

Checks per account:
  1. snapshot:   newest ledger entry balance_after == accounts.balance
  2. sum:        SUM(ledger_entries.amount) == accounts.balance
  3. refunds:    failed/cancelled jobs have exactly one refund entry,
                 completed jobs have none

Read-only. Repairs are an operator decision (ledger adjust with a reason).
"""

import logging
from typing import Any, Dict, List, Optional

from vidgen.db import fetch_all, fetch_one, transaction, Tables
from vidgen.services.job_service import JobStatus
from vidgen.services.ledger_service import LedgerEntryKind

logger = logging.getLogger("vidgen.audit")


class LedgerAuditService:
    def __init__(self, tx=transaction):
        self._tx = tx

    def list_account_ids(self, limit: Optional[int] = None) -> List[str]:
        sql = f"SELECT id FROM {Tables.ACCOUNTS} ORDER BY id"
        params: tuple = ()
        if limit:
            sql += " LIMIT %s"
            params = (limit,)
        with self._tx() as cur:
            cur.execute(sql, params)
            return [row["id"] for row in fetch_all(cur)]

    def audit_account(self, account_id: str) -> Dict[str, Any]:
        """Returns {"account_id", "balance", "ledger_sum", "snapshot", "issues": [...]}."""
        with self._tx() as cur:
            cur.execute(f"SELECT balance FROM {Tables.ACCOUNTS} WHERE id = %s", (account_id,))
            account = fetch_one(cur)
            if account is None:
                return {"account_id": account_id, "issues": ["account not found"]}

            cur.execute(
                f"""
                SELECT COALESCE(SUM(amount), 0) AS ledger_sum, COUNT(*) AS entries
                FROM {Tables.LEDGER_ENTRIES}
                WHERE account_id = %s
                """,
                (account_id,),
            )
            totals = fetch_one(cur)

            cur.execute(
                f"""
                SELECT balance_after FROM {Tables.LEDGER_ENTRIES}
                WHERE account_id = %s
                ORDER BY id DESC
                LIMIT 1
                """,
                (account_id,),
            )
            newest = fetch_one(cur)

            cur.execute(
                f"""
                SELECT j.id, j.status, COUNT(l.id) AS refunds
                FROM {Tables.JOBS} j
                LEFT JOIN {Tables.LEDGER_ENTRIES} l
                  ON l.related_job_id = j.id AND l.kind = %s
                WHERE j.account_id = %s
                  AND j.status IN (%s, %s, %s)
                  AND j.cost_credits > 0
                GROUP BY j.id, j.status
                """,
                (
                    LedgerEntryKind.REFUND,
                    account_id,
                    JobStatus.COMPLETED,
                    JobStatus.FAILED,
                    JobStatus.CANCELLED,
                ),
            )
            jobs = fetch_all(cur)

        balance = int(account["balance"])
        ledger_sum = int(totals["ledger_sum"])
        snapshot = int(newest["balance_after"]) if newest else 0
        issues = []

        if snapshot != balance:
            issues.append(f"snapshot drift: newest balance_after={snapshot}, balance={balance}")
        if ledger_sum != balance:
            issues.append(f"sum drift: ledger_sum={ledger_sum}, balance={balance}")
        for job in jobs:
            refunds = int(job["refunds"])
            if job["status"] == JobStatus.COMPLETED and refunds:
                issues.append(f"job {job['id']} completed but has {refunds} refund(s)")
            elif job["status"] in (JobStatus.FAILED, JobStatus.CANCELLED) and refunds != 1:
                issues.append(f"job {job['id']} {job['status']} has {refunds} refund(s), expected 1")

        if issues:
            logger.error("[AUDIT] account=%s issues=%s", account_id, issues)
        return {
            "account_id": account_id,
            "balance": balance,
            "ledger_sum": ledger_sum,
            "snapshot": snapshot,
            "entries": int(totals["entries"]),
            "issues": issues,
        }

    def audit_all(self, limit: Optional[int] = None) -> Dict[str, Any]:
        results = [self.audit_account(account_id) for account_id in self.list_account_ids(limit)]
        drifted = [r for r in results if r["issues"]]
        logger.info("[AUDIT] Audited %d accounts, %d with issues", len(results), len(drifted))
        return {"checked": len(results), "drifted": len(drifted), "results": results}
