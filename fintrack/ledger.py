"""Account balance ledger.

Every write to an account's cached balance goes through ``BalanceLedger``.
A transaction's balance effect is either absent or applied; ``apply``
moves it from absent to applied and ``reverse`` moves it back, using the
exact negation of the applied deltas.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal

import aiosqlite

from fintrack.db.models import Transaction, TransactionType
from fintrack.db.repository import AccountNotFoundError, Repository

log = logging.getLogger("fintrack.ledger")


@dataclass(frozen=True)
class ExpenseEffect:
    """Money leaving one account."""

    account_id: str
    amount: Decimal

    def __post_init__(self):
        _check(self.account_id, self.amount)

    def deltas(self) -> dict[str, Decimal]:
        return {self.account_id: -self.amount}


@dataclass(frozen=True)
class IncomeEffect:
    """Money arriving in one account."""

    account_id: str
    amount: Decimal

    def __post_init__(self):
        _check(self.account_id, self.amount)

    def deltas(self) -> dict[str, Decimal]:
        return {self.account_id: self.amount}


@dataclass(frozen=True)
class TransferEffect:
    """Money moving between two different accounts."""

    from_account_id: str
    to_account_id: str
    amount: Decimal

    def __post_init__(self):
        _check(self.from_account_id, self.amount)
        if not self.to_account_id:
            raise ValueError("Transfer requires a destination account")
        if self.to_account_id == self.from_account_id:
            raise ValueError("Transfer destination must differ from the source account")

    def deltas(self) -> dict[str, Decimal]:
        return {self.from_account_id: -self.amount, self.to_account_id: self.amount}


BalanceEffect = ExpenseEffect | IncomeEffect | TransferEffect


def _check(account_id: str, amount: Decimal) -> None:
    if not account_id:
        raise ValueError("Balance effect requires an account")
    if amount < 0:
        raise ValueError(f"Amount must be a non-negative magnitude, got {amount}")


def balance_effect(
    txn_type: TransactionType | str,
    account_id: str,
    amount: Decimal | int | str,
    transfer_to_account_id: str | None = None,
) -> BalanceEffect:
    """Build the balance effect implied by a transaction's ledger fields."""
    txn_type = TransactionType(txn_type)
    amount = Decimal(str(amount))
    if txn_type == TransactionType.TRANSFER:
        return TransferEffect(account_id, transfer_to_account_id, amount)
    if transfer_to_account_id is not None:
        raise ValueError(f"{txn_type.value} transaction cannot have a transfer destination")
    if txn_type == TransactionType.INCOME:
        return IncomeEffect(account_id, amount)
    return ExpenseEffect(account_id, amount)


def effect_of(txn: Transaction) -> BalanceEffect:
    """Build the balance effect of a transaction."""
    return balance_effect(txn.type, txn.account_id, txn.amount, txn.transfer_to_account_id)


@dataclass
class BulkResult:
    """Per-ID outcome of an operation over many transactions."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Check if every ID succeeded."""
        return not self.failed


class BalanceLedger:
    """Sole writer of account balances."""

    def __init__(self, repo: Repository):
        self._repo = repo
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _locked(self, account_ids):
        """Hold the locks of all given accounts, acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for account_id in sorted(set(account_ids)):
                await stack.enter_async_context(self._locks[account_id])
            yield

    async def apply(self, effect: BalanceEffect) -> None:
        """Apply a balance effect."""
        deltas = effect.deltas()
        async with self._locked(deltas):
            await self._write(deltas)

    async def reverse(self, effect: BalanceEffect) -> None:
        """Undo a previously applied balance effect."""
        deltas = _negate(effect.deltas())
        async with self._locked(deltas):
            await self._write(deltas)

    async def apply_transaction_balance(
        self,
        txn_type: TransactionType | str,
        account_id: str,
        amount: Decimal | int | str,
        transfer_to_account_id: str | None = None,
        reverse: bool = False,
    ) -> None:
        """Apply, or with ``reverse=True`` undo, the effect of raw ledger fields."""
        effect = balance_effect(txn_type, account_id, amount, transfer_to_account_id)
        if reverse:
            await self.reverse(effect)
        else:
            await self.apply(effect)

    async def apply_transaction(self, txn: Transaction) -> None:
        """Move a persisted transaction's balance effect from absent to applied.

        The balance change and the transaction's ``balance_applied`` flag are
        written together.
        """
        deltas = effect_of(txn).deltas()
        async with self._locked(deltas):
            await self._expect_state(txn, applied=False)
            await self._write(deltas, txn.id, True)
        txn.balance_applied = True

    async def reverse_transaction(self, txn: Transaction) -> None:
        """Move a persisted transaction's balance effect from applied to absent."""
        deltas = _negate(effect_of(txn).deltas())
        async with self._locked(deltas):
            await self._expect_state(txn, applied=True)
            await self._write(deltas, txn.id, False)
        txn.balance_applied = False

    async def backfill_pending(self) -> BulkResult:
        """Bring balances in line with the stored transactions.

        Applies every live transaction whose effect is absent and reverses
        every deleted transaction whose effect is still applied. This is the
        retry path for balance writes that failed after the row was saved.
        """
        result = BulkResult()
        unapplied = await self._repo.get_unapplied_transactions()
        unreversed = await self._repo.get_unreversed_transactions()
        pending = [(txn, self.apply_transaction) for txn in unapplied]
        pending += [(txn, self.reverse_transaction) for txn in unreversed]
        for txn, operation in pending:
            try:
                await operation(txn)
            except (LedgerError, ValueError) as e:
                log.warning(f"Backfill failed for transaction {txn.id}: {e}")
                result.failed[txn.id] = str(e)
            else:
                result.succeeded.append(txn.id)
        log.info(
            f"Backfilled {len(result.succeeded)} transactions, {len(result.failed)} failed"
        )
        return result

    async def _expect_state(self, txn: Transaction, applied: bool) -> None:
        """Raise LedgerStateError unless the stored ledger state is as expected."""
        if txn.id is None:
            raise LedgerStateError("Transaction has not been persisted")
        stored = await self._repo.get_transaction_by_id(txn.id, include_deleted=True)
        if stored is None:
            raise LedgerError(f"Transaction {txn.id} not found", txn.id)
        if stored.balance_applied != applied:
            state = "applied" if stored.balance_applied else "absent"
            raise LedgerStateError(f"Balance effect of {txn.id} is already {state}", txn.id)

    async def _write(
        self,
        deltas: dict[str, Decimal],
        txn_id: str | None = None,
        balance_applied: bool | None = None,
    ) -> None:
        try:
            await self._repo._adjust_balances(deltas, txn_id, balance_applied)
        except AccountNotFoundError as e:
            raise LedgerError(str(e), txn_id) from e
        except aiosqlite.Error as e:
            raise LedgerError(f"Balance write failed: {e}", txn_id) from e
        log.info(f"Adjusted balances {_format(deltas)} for transaction {txn_id}")


def _negate(deltas: dict[str, Decimal]) -> dict[str, Decimal]:
    return {account_id: -delta for account_id, delta in deltas.items()}


def _format(deltas: dict[str, Decimal]) -> str:
    return ", ".join(f"{account_id}:{delta:+}" for account_id, delta in deltas.items())


class LedgerError(Exception):
    """Exception raised when a balance write fails. Safe to retry."""

    retryable = True

    def __init__(self, message: str, transaction_id: str | None = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class LedgerStateError(LedgerError):
    """Exception raised for an apply or reverse that would double-count."""

    retryable = False
