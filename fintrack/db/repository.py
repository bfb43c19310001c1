"""Data access layer for SQLite database."""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path

import aiosqlite

from fintrack.db.migrations import SCHEMA_VERSION, get_migration_sql
from fintrack.db.models import (
    Account,
    ActionOutcome,
    AppliedRule,
    AutomationRule,
    ConditionLogic,
    DuplicateStatus,
    OutcomeStatus,
    RuleType,
    Transaction,
    TransactionType,
    actions_from_dict,
    actions_to_dict,
    conditions_from_dict,
    conditions_to_dict,
)


def new_id() -> str:
    """Generate a new record identifier."""
    return uuid.uuid4().hex


class Repository:
    """Async repository for database operations."""

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:  # pragma: no cover
        """Run pending database migrations."""
        current_version = await self._get_schema_version()
        if current_version < SCHEMA_VERSION:
            migrations = get_migration_sql(current_version, SCHEMA_VERSION)
            for sql in migrations:
                await self._connection.executescript(sql)
            await self._connection.commit()

    async def _get_schema_version(self) -> int:
        """Get current schema version from database."""
        try:
            cursor = await self._connection.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row["version"] if row else 0
        except aiosqlite.OperationalError:
            return 0

    @asynccontextmanager
    async def _writing(self):
        """Run a block of writes as one transaction on the shared connection.

        Commits on success and rolls back on any error. Write blocks are
        serialized so that one coroutine's commit never flushes another's
        half-finished work.
        """
        async with self._write_lock:
            try:
                yield
            except BaseException:
                await self._connection.rollback()
                raise
            await self._connection.commit()

    # Account operations

    async def save_account(self, account: Account) -> Account:
        """Save a new account or update an existing one.

        The balance column is written only on insert; afterwards it belongs
        to the balance ledger.
        """
        if account.id is None:
            account_id = new_id()
            async with self._writing():
                await self._connection.execute(
                    """INSERT INTO accounts (id, name, currency, balance, is_active,
                       deleted_at, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        account_id,
                        account.name,
                        account.currency,
                        str(account.balance),
                        int(account.is_active),
                        _iso(account.deleted_at),
                        account.created_at.isoformat(),
                    ),
                )
        else:
            account_id = account.id
            async with self._writing():
                await self._connection.execute(
                    """UPDATE accounts SET name=?, currency=?, is_active=?, deleted_at=?
                       WHERE id=?""",
                    (
                        account.name,
                        account.currency,
                        int(account.is_active),
                        _iso(account.deleted_at),
                        account_id,
                    ),
                )
        return await self.get_account_by_id(account_id)

    async def get_account_by_id(self, account_id: str) -> Account | None:
        """Get account by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_all_accounts(self) -> list[Account]:
        """Get all accounts that have not been deleted."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE deleted_at IS NULL ORDER BY name"
        )
        rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    async def _adjust_balances(
        self,
        deltas: dict[str, Decimal],
        txn_id: str | None = None,
        balance_applied: bool | None = None,
    ) -> None:
        """Add signed deltas to account balances in a single transaction.

        Only the balance ledger calls this. When ``txn_id`` is given the
        transaction's ledger state flag is written in the same transaction.
        """
        async with self._writing():
            for account_id, delta in deltas.items():
                cursor = await self._connection.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (account_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise AccountNotFoundError(f"Account {account_id} not found")
                balance = Decimal(row["balance"]) + delta
                await self._connection.execute(
                    "UPDATE accounts SET balance = ? WHERE id = ?", (str(balance), account_id)
                )
            if txn_id is not None:
                await self._connection.execute(
                    "UPDATE transactions SET balance_applied = ?, updated_at = ? WHERE id = ?",
                    (int(bool(balance_applied)), datetime.now().isoformat(), txn_id),
                )

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        """Convert database row to Account object."""
        return Account(
            id=row["id"],
            name=row["name"],
            currency=row["currency"],
            balance=Decimal(row["balance"]),
            is_active=bool(row["is_active"]),
            deleted_at=_parse_datetime(row["deleted_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Automation rule operations

    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        """Save or update an automation rule."""
        values = (
            rule.name,
            rule.priority,
            int(rule.is_active),
            rule.condition_logic.value,
            json.dumps(conditions_to_dict(rule.conditions)),
            json.dumps(actions_to_dict(rule.actions)),
            rule.rule_type.value,
            rule.transfer_to_account_id,
        )
        if rule.id is None:
            rule_id = new_id()
            async with self._writing():
                await self._connection.execute(
                    """INSERT INTO automation_rules (name, priority, is_active,
                       condition_logic, conditions, actions, rule_type,
                       transfer_to_account_id, id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (*values, rule_id, rule.created_at.isoformat()),
                )
        else:
            rule_id = rule.id
            async with self._writing():
                await self._connection.execute(
                    """UPDATE automation_rules SET name=?, priority=?, is_active=?,
                       condition_logic=?, conditions=?, actions=?, rule_type=?,
                       transfer_to_account_id=?
                       WHERE id=?""",
                    (*values, rule_id),
                )
        return await self.get_rule_by_id(rule_id)

    async def get_rule_by_id(self, rule_id: str) -> AutomationRule | None:
        """Get rule by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM automation_rules WHERE id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_rule(row) if row else None

    async def get_active_rules(self) -> list[AutomationRule]:
        """Get all active rules ordered by priority."""
        cursor = await self._connection.execute(
            "SELECT * FROM automation_rules WHERE is_active = 1 "
            "ORDER BY priority DESC, created_at, id"
        )
        rows = await cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    def _row_to_rule(self, row: aiosqlite.Row) -> AutomationRule:
        """Convert database row to AutomationRule object."""
        return AutomationRule(
            id=row["id"],
            name=row["name"],
            conditions=conditions_from_dict(json.loads(row["conditions"])),
            actions=actions_from_dict(json.loads(row["actions"])),
            condition_logic=ConditionLogic(row["condition_logic"]),
            priority=row["priority"],
            is_active=bool(row["is_active"]),
            rule_type=RuleType(row["rule_type"]),
            transfer_to_account_id=row["transfer_to_account_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Transaction operations

    async def save_transaction(self, txn: Transaction) -> Transaction:
        """Insert a new transaction under a fresh ID.

        ``balance_applied`` is stored as given; the ledger flips it when it
        applies or reverses the transaction's balance effect. Existing rows
        are edited with update_transaction.
        """
        now = datetime.now()
        values = (
            txn.account_id,
            txn.type.value,
            str(txn.amount),
            txn.date.isoformat(),
            txn.time.isoformat() if txn.time else None,
            txn.description,
            txn.transfer_to_account_id,
            txn.transfer_id,
            txn.category_id,
            txn.notes,
            txn.source,
            txn.raw_text,
            int(txn.is_reconciled),
            _iso(txn.reconciled_at),
            json.dumps([_applied_rule_to_dict(a) for a in txn.applied_rules]),
            txn.duplicate_status.value if txn.duplicate_status else None,
            txn.duplicate_of,
            txn.import_id,
            int(txn.balance_applied),
            _iso(txn.deleted_at),
            now.isoformat(),
        )
        txn_id = new_id()
        async with self._writing():
            await self._connection.execute(
                """INSERT INTO transactions (account_id, type, amount, date, time,
                   description, transfer_to_account_id, transfer_id, category_id,
                   notes, source, raw_text, is_reconciled, reconciled_at,
                   applied_rules, duplicate_status, duplicate_of, import_id,
                   balance_applied, deleted_at, updated_at, id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                   ?, ?, ?, ?, ?)""",
                (*values, txn_id, txn.created_at.isoformat()),
            )
        return await self.get_transaction_by_id(txn_id, include_deleted=True)

    async def update_transaction(self, txn: Transaction) -> Transaction | None:
        """Write the editable fields of a live transaction.

        ``balance_applied`` and ``deleted_at`` keep their stored values; only
        the ledger and soft delete change them. Returns None when the
        transaction does not exist or was deleted.
        """
        async with self._writing():
            cursor = await self._connection.execute(
                """UPDATE transactions SET account_id=?, type=?, amount=?, date=?,
                   time=?, description=?, transfer_to_account_id=?, transfer_id=?,
                   category_id=?, notes=?, is_reconciled=?, reconciled_at=?,
                   duplicate_status=?, duplicate_of=?, updated_at=?
                   WHERE id=? AND deleted_at IS NULL""",
                (
                    txn.account_id,
                    txn.type.value,
                    str(txn.amount),
                    txn.date.isoformat(),
                    txn.time.isoformat() if txn.time else None,
                    txn.description,
                    txn.transfer_to_account_id,
                    txn.transfer_id,
                    txn.category_id,
                    txn.notes,
                    int(txn.is_reconciled),
                    _iso(txn.reconciled_at),
                    txn.duplicate_status.value if txn.duplicate_status else None,
                    txn.duplicate_of,
                    datetime.now().isoformat(),
                    txn.id,
                ),
            )
        if cursor.rowcount == 0:
            return None
        return await self.get_transaction_by_id(txn.id)

    async def get_transaction_by_id(
        self, txn_id: str, include_deleted: bool = False
    ) -> Transaction | None:
        """Get transaction by ID, skipping soft-deleted rows unless asked."""
        query = "SELECT * FROM transactions WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        cursor = await self._connection.execute(query, (txn_id,))
        row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    async def get_transactions_by_ids(self, txn_ids: list[str]) -> list[Transaction]:
        """Get the live transactions among the given IDs."""
        if not txn_ids:
            return []
        placeholders = ", ".join("?" for _ in txn_ids)
        cursor = await self._connection.execute(
            f"SELECT * FROM transactions WHERE id IN ({placeholders}) "
            "AND deleted_at IS NULL ORDER BY date, created_at",
            list(txn_ids),
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_transactions_in_window(
        self, account_id: str, start_date: date, end_date: date
    ) -> list[Transaction]:
        """Get live transactions on an account between two dates (inclusive)."""
        cursor = await self._connection.execute(
            """SELECT * FROM transactions WHERE account_id = ? AND date >= ? AND date <= ?
               AND deleted_at IS NULL ORDER BY date, created_at""",
            (account_id, start_date.isoformat(), end_date.isoformat()),
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_transactions_by_raw_text(self, raw_text: str, source: str) -> list[Transaction]:
        """Get live transactions captured from the same source text."""
        cursor = await self._connection.execute(
            """SELECT * FROM transactions WHERE raw_text = ? AND source = ?
               AND deleted_at IS NULL ORDER BY created_at""",
            (raw_text, source),
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_transactions_by_import(self, import_id: str) -> list[Transaction]:
        """Get live transactions created by one import run."""
        cursor = await self._connection.execute(
            """SELECT * FROM transactions WHERE import_id = ? AND deleted_at IS NULL
               ORDER BY date, created_at""",
            (import_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_unapplied_transactions(self) -> list[Transaction]:
        """Get live transactions whose balance effect has not been applied."""
        cursor = await self._connection.execute(
            """SELECT * FROM transactions WHERE balance_applied = 0 AND deleted_at IS NULL
               ORDER BY created_at"""
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_unreversed_transactions(self) -> list[Transaction]:
        """Get deleted transactions whose balance effect is still applied."""
        cursor = await self._connection.execute(
            """SELECT * FROM transactions WHERE balance_applied = 1 AND deleted_at IS NOT NULL
               ORDER BY deleted_at"""
        )
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def soft_delete_transactions(self, txn_ids: list[str]) -> int:
        """Mark live transactions deleted in one write. Returns count deleted."""
        if not txn_ids:
            return 0
        now = datetime.now().isoformat()
        placeholders = ", ".join("?" for _ in txn_ids)
        async with self._writing():
            cursor = await self._connection.execute(
                f"UPDATE transactions SET deleted_at = ?, updated_at = ? "
                f"WHERE id IN ({placeholders}) AND deleted_at IS NULL",
                [now, now, *txn_ids],
            )
        return cursor.rowcount

    def _row_to_transaction(self, row: aiosqlite.Row) -> Transaction:
        """Convert database row to Transaction object."""
        return Transaction(
            id=row["id"],
            account_id=row["account_id"],
            type=TransactionType(row["type"]),
            amount=Decimal(row["amount"]),
            date=date.fromisoformat(row["date"]),
            time=time.fromisoformat(row["time"]) if row["time"] else None,
            description=row["description"],
            transfer_to_account_id=row["transfer_to_account_id"],
            transfer_id=row["transfer_id"],
            category_id=row["category_id"],
            notes=row["notes"],
            source=row["source"],
            raw_text=row["raw_text"],
            is_reconciled=bool(row["is_reconciled"]),
            reconciled_at=_parse_datetime(row["reconciled_at"]),
            applied_rules=[_applied_rule_from_dict(a) for a in json.loads(row["applied_rules"])],
            duplicate_status=(
                DuplicateStatus(row["duplicate_status"]) if row["duplicate_status"] else None
            ),
            duplicate_of=row["duplicate_of"],
            import_id=row["import_id"],
            balance_applied=bool(row["balance_applied"]),
            deleted_at=_parse_datetime(row["deleted_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


def _iso(value: datetime | None) -> str | None:
    """Format an optional datetime for storage."""
    return value.isoformat() if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    """Parse an optional stored datetime."""
    return datetime.fromisoformat(value) if value else None


def _applied_rule_to_dict(applied: AppliedRule) -> dict:
    """Convert an AppliedRule to its stored JSON shape."""
    return {
        "rule_id": applied.rule_id,
        "rule_name": applied.rule_name,
        "actions": applied.actions,
        "outcomes": [
            {"action": o.action, "status": o.status.value, "detail": o.detail}
            for o in applied.outcomes
        ],
    }


def _applied_rule_from_dict(data: dict) -> AppliedRule:
    """Build an AppliedRule from its stored JSON shape."""
    return AppliedRule(
        rule_id=data.get("rule_id"),
        rule_name=data.get("rule_name", ""),
        actions=data.get("actions") or {},
        outcomes=[
            ActionOutcome(
                action=o["action"],
                status=OutcomeStatus(o["status"]),
                detail=o.get("detail"),
            )
            for o in data.get("outcomes", [])
        ],
    )


class AccountNotFoundError(Exception):
    """Exception raised when a balance write targets a missing account."""
