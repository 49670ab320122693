"""
Ledger Service - Owns account balances and the append-only credit ledger.

═══════════════════════════════════════════════════════════════════════════════
SOURCE OF TRUTH
═══════════════════════════════════════════════════════════════════════════════

  BALANCE:    accounts.balance
              → mutated ONLY by _apply(), in the same transaction as the
                ledger entry that explains it

  HISTORY:    ledger_entries (append-only, never updated or deleted)
              → balance_after on the newest entry == accounts.balance

  INVARIANT:  accounts.balance == SUM(ledger_entries.amount)

═══════════════════════════════════════════════════════════════════════════════

Entry kinds:
- reserve-debit: Credits taken when a job is requested (negative)
- refund: Credits returned for a failed or cancelled job (positive, once per job)
- recharge: Credits added by a purchase or initial grant (positive)
- admin-adjust: Manual adjustment (positive or negative)

Every public mutation accepts an optional ``cur``. When given, the operation
joins the caller's transaction, which is how a reservation is committed
atomically with the job row and its outbox record.
"""

import logging
from typing import Optional, Dict, Any, List

from vidgen.db import fetch_one, fetch_all, transaction, use_cursor, Tables

logger = logging.getLogger("vidgen.ledger")


class LedgerEntryKind:
    """Valid ledger entry kinds."""
    RESERVE_DEBIT = "reserve-debit"
    REFUND = "refund"
    RECHARGE = "recharge"
    ADMIN_ADJUST = "admin-adjust"

    ALL = (RESERVE_DEBIT, REFUND, RECHARGE, ADMIN_ADJUST)


# ─────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────
class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class AccountNotFoundError(LedgerError):
    """Raised when an operation targets an account that does not exist."""
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take the balance below zero."""
    def __init__(self, account_id: str, balance: int, requested: int):
        super().__init__(
            f"Insufficient credits for account {account_id}: balance={balance}, requested={requested}"
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


def _require_positive(amount: int, what: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"{what} must be a positive integer, got {amount!r}")


class LedgerService:
    """Atomic credit operations over accounts + ledger_entries."""

    def __init__(self, tx=transaction):
        self._tx = tx

    # ─────────────────────────────────────────────────────────────
    # Accounts
    # ─────────────────────────────────────────────────────────────
    def create_account(self, account_id: str, initial_balance: int = 0, cur=None) -> Dict[str, Any]:
        """
        Open an account at zero and book any initial balance as a recharge,
        so the ledger always explains the balance.

        Raises:
            ValueError: If the account already exists or initial_balance < 0
        """
        if initial_balance < 0:
            raise ValueError(f"initial_balance must be >= 0, got {initial_balance}")

        with use_cursor(self._tx, cur) as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.ACCOUNTS} (id, balance, created_at, updated_at)
                VALUES (%s, 0, NOW(), NOW())
                ON CONFLICT (id) DO NOTHING
                RETURNING *
                """,
                (account_id,),
            )
            account = fetch_one(cur)
            if account is None:
                raise ValueError(f"Account already exists: {account_id}")

            if initial_balance:
                entry = self._apply(cur, account_id, initial_balance, LedgerEntryKind.RECHARGE, "Initial balance")
                account["balance"] = entry["balance_after"]

        logger.info("[LEDGER] Account created: %s (balance=%s)", account_id, account["balance"])
        return account

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._tx() as cur:
            cur.execute(f"SELECT * FROM {Tables.ACCOUNTS} WHERE id = %s", (account_id,))
            return fetch_one(cur)

    def get_balance(self, account_id: str) -> int:
        """
        Raises:
            AccountNotFoundError: If the account does not exist
        """
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return int(account["balance"])

    # ─────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────
    def reserve(
        self,
        account_id: str,
        amount: int,
        description: str,
        related_job_id: Optional[str] = None,
        cur=None,
    ) -> Dict[str, Any]:
        """
        Debit ``amount`` credits for a job request.

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If balance < amount (balance unchanged)
        """
        _require_positive(amount, "Reserve amount")
        with use_cursor(self._tx, cur) as cur:
            return self._apply(cur, account_id, -amount, LedgerEntryKind.RESERVE_DEBIT, description, related_job_id)

    def refund(
        self,
        account_id: str,
        amount: int,
        related_job_id: str,
        description: str,
        cur=None,
    ) -> Dict[str, Any]:
        """
        Return ``amount`` credits for a job that failed or was cancelled.

        Callers must only refund on the terminal transition of a job. The
        schema rejects a second refund for the same job.
        """
        _require_positive(amount, "Refund amount")
        if not related_job_id:
            raise ValueError("Refunds must reference a job")
        with use_cursor(self._tx, cur) as cur:
            return self._apply(cur, account_id, amount, LedgerEntryKind.REFUND, description, related_job_id)

    def recharge(self, account_id: str, amount: int, description: str = "Recharge", cur=None) -> Dict[str, Any]:
        _require_positive(amount, "Recharge amount")
        with use_cursor(self._tx, cur) as cur:
            return self._apply(cur, account_id, amount, LedgerEntryKind.RECHARGE, description)

    def adjust(self, account_id: str, signed_amount: int, description: str, cur=None) -> Dict[str, Any]:
        """
        Administrative credit (positive) or debit (negative).

        Raises:
            InsufficientFundsError: If a debit exceeds the balance
        """
        if not isinstance(signed_amount, int) or isinstance(signed_amount, bool) or signed_amount == 0:
            raise ValueError(f"Adjustment must be a non-zero integer, got {signed_amount!r}")
        with use_cursor(self._tx, cur) as cur:
            return self._apply(cur, account_id, signed_amount, LedgerEntryKind.ADMIN_ADJUST, description)

    def _apply(
        self,
        cur,
        account_id: str,
        delta: int,
        kind: str,
        description: str,
        related_job_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lock the account row, write the new balance and append the entry.

        This is the ONLY place accounts.balance is modified. The row lock is
        held until the surrounding transaction ends.
        """
        cur.execute(
            f"""
            SELECT id, balance
            FROM {Tables.ACCOUNTS}
            WHERE id = %s
            FOR UPDATE
            """,
            (account_id,),
        )
        account = fetch_one(cur)
        if not account:
            raise AccountNotFoundError(account_id)

        current_balance = int(account["balance"])
        new_balance = current_balance + delta
        if new_balance < 0:
            raise InsufficientFundsError(account_id, current_balance, -delta)

        cur.execute(
            f"""
            INSERT INTO {Tables.LEDGER_ENTRIES}
            (account_id, amount, balance_after, kind, description, related_job_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, NOW())
            RETURNING *
            """,
            (account_id, delta, new_balance, kind, description or "", related_job_id),
        )
        entry = fetch_one(cur)

        cur.execute(
            f"""
            UPDATE {Tables.ACCOUNTS}
            SET balance = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (new_balance, account_id),
        )

        logger.info(
            "[LEDGER] %s: account=%s delta=%+d balance: %s -> %s job=%s",
            kind, account_id, delta, current_balance, new_balance, related_job_id,
        )
        return entry

    # ─────────────────────────────────────────────────────────────
    # History
    # ─────────────────────────────────────────────────────────────
    def list_entries(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Newest-first ledger history for an account."""
        if kind is not None and kind not in LedgerEntryKind.ALL:
            raise ValueError(f"Unknown ledger entry kind: {kind}")

        sql = f"SELECT * FROM {Tables.LEDGER_ENTRIES} WHERE account_id = %s"
        params: list = [account_id]
        if kind:
            sql += " AND kind = %s"
            params.append(kind)
        sql += " ORDER BY id DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        with self._tx() as cur:
            cur.execute(sql, tuple(params))
            return fetch_all(cur)

    def refund_entries_for_job(self, job_id: str) -> List[Dict[str, Any]]:
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.LEDGER_ENTRIES}
                WHERE related_job_id = %s AND kind = %s
                ORDER BY id
                """,
                (job_id, LedgerEntryKind.REFUND),
            )
            return fetch_all(cur)
