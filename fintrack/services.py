"""Transaction write paths: automation, duplicate checks and balance upkeep."""

import asyncio
import logging
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date, time
from decimal import Decimal, InvalidOperation

from fintrack.db.models import (
    BALANCE_FIELDS,
    DuplicateStatus,
    Transaction,
    TransactionSource,
    TransactionType,
)
from fintrack.db.repository import Repository, new_id
from fintrack.duplicates import DuplicateDetector, DuplicateResolution
from fintrack.ledger import BalanceLedger, BulkResult, LedgerError
from fintrack.rules import RuleEvaluation, apply_automation_rules
from fintrack.rules.actions import DEFAULT_NOTE_DELIMITER

log = logging.getLogger("fintrack.services")

EDITABLE_FIELDS = frozenset(
    {
        "account_id",
        "type",
        "amount",
        "date",
        "time",
        "description",
        "transfer_to_account_id",
        "category_id",
        "notes",
        "is_reconciled",
    }
)
BULK_UPDATE_FIELDS = frozenset({"type", "category_id", "account_id", "transfer_to_account_id"})


@dataclass
class CreateResult:
    """Outcome of a create request.

    When ``duplicate`` is set nothing was written and the caller must
    resubmit with a DuplicateResolution.
    """

    transaction: Transaction | None
    evaluation: RuleEvaluation
    duplicate: Transaction | None = None

    @property
    def created(self) -> bool:
        return self.transaction is not None


@dataclass
class ImportResult:
    """Outcome of importing a batch of transactions."""

    import_id: str
    created: list[Transaction] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    duplicates: dict[int, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class TransactionService:
    """Runs every transaction mutation through rules, duplicates and the ledger.

    Mutations of an existing transaction hold that transaction's lock from
    the read until the balance effect is settled, so an edit and a delete of
    the same row never interleave.
    """

    def __init__(
        self,
        repo: Repository,
        ledger: BalanceLedger,
        detector: DuplicateDetector,
        note_delimiter: str = DEFAULT_NOTE_DELIMITER,
    ):
        self._repo = repo
        self._ledger = ledger
        self._detector = detector
        self._note_delimiter = note_delimiter
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def ledger(self) -> BalanceLedger:
        return self._ledger

    @asynccontextmanager
    async def _locked(self, txn_ids):
        """Hold the locks of all given transactions, acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for txn_id in sorted(set(txn_ids)):
                await stack.enter_async_context(self._locks[txn_id])
            yield

    async def preview(self, candidate: Transaction, raw_text: str | None = None) -> RuleEvaluation:
        """Apply automation rules without writing anything."""
        return await self._run_rules(candidate, raw_text)

    async def check_duplicates(self, candidates: list[Transaction]) -> dict[int, Transaction]:
        """Flag probable duplicates in a batch before importing it."""
        return await self._detector.find_duplicates(candidates)

    async def create_transaction(
        self,
        candidate: Transaction,
        raw_text: str | None = None,
        resolution: DuplicateResolution | None = None,
        replace_id: str | None = None,
    ) -> CreateResult:
        """Create a transaction and apply its balance effect.

        Without a resolution a probable duplicate stops the request and is
        returned to the caller. CREATE_ANYWAY inserts alongside it;
        REPLACE_EXISTING removes the transaction given by ``replace_id``
        once the new one is stored.
        """
        evaluation = await self._run_rules(candidate, raw_text)
        txn = replace(
            evaluation.candidate,
            id=None,
            applied_rules=list(evaluation.applied_rules),
            balance_applied=False,
            deleted_at=None,
        )
        txn.validate()

        if resolution is None:
            duplicate = await self._detector.find_duplicate(txn)
            if duplicate is not None:
                return CreateResult(transaction=None, evaluation=evaluation, duplicate=duplicate)
        elif resolution == DuplicateResolution.REPLACE_EXISTING:
            if replace_id is None:
                raise ValueError("replace_id is required to replace an existing transaction")
            saved = await self._create_replacing(txn, replace_id)
            return CreateResult(transaction=saved, evaluation=evaluation)
        else:
            duplicate = await self._detector.find_duplicate(txn)
            txn.duplicate_status = DuplicateStatus.CONFIRMED
            txn.duplicate_of = duplicate.id if duplicate else None

        saved = await self._repo.save_transaction(txn)
        log.info(f"Created transaction {saved.id} ({saved.type.value} {saved.amount})")
        await self._apply_new(saved)
        return CreateResult(transaction=saved, evaluation=evaluation)

    async def _create_replacing(self, txn: Transaction, replace_id: str) -> Transaction:
        """Store ``txn``, then remove the transaction it replaces."""
        async with self._locked([replace_id]):
            existing = await self._get_live(replace_id)
            saved = await self._repo.save_transaction(txn)
            log.info(f"Created transaction {saved.id} ({saved.type.value} {saved.amount})")
            try:
                await self._remove(existing)
            except LedgerError as e:
                log.error(f"Balance not reversed for replaced transaction {existing.id}: {e}")
                raise LedgerError(
                    f"Transaction {saved.id} saved but balance not applied; "
                    f"replaced transaction {existing.id} awaits balance backfill: {e}",
                    saved.id,
                ) from e
            log.info(f"Transaction {saved.id} replaced {existing.id}")
        await self._apply_new(saved)
        return saved

    async def update_transaction(self, txn_id: str, changes: dict) -> Transaction:
        """Edit a transaction, moving its balance effect only if a ledger field changed.

        If the edit cannot be written after the old effect was reversed, the
        old effect is applied again before the error propagates.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        coerced = _coerce_changes(changes)

        async with self._locked([txn_id]):
            prior = await self._get_live(txn_id)
            updated = replace(prior, **coerced)
            if updated.type != TransactionType.TRANSFER and "transfer_to_account_id" not in changes:
                updated.transfer_to_account_id = None
                updated.transfer_id = None
            updated.validate()

            if not _balance_changed(prior, updated):
                return await self._write_edit(updated)

            was_applied = prior.balance_applied
            if was_applied:
                await self._ledger.reverse_transaction(prior)
            try:
                saved = await self._write_edit(updated)
            except TransactionNotFoundError:
                raise
            except Exception:
                if was_applied:
                    await self._ledger.apply_transaction(prior)
                raise
            log.info(f"Updated ledger fields of transaction {saved.id}")
            await self._apply_new(saved)
            return saved

    async def delete_transaction(self, txn_id: str) -> None:
        """Soft-delete a transaction and reverse its balance effect once."""
        async with self._locked([txn_id]):
            txn = await self._get_live(txn_id)
            await self._remove(txn)
        log.info(f"Deleted transaction {txn_id}")

    async def bulk_delete(self, txn_ids: list[str]) -> BulkResult:
        """Soft-delete many transactions, then reverse each one's balance effect.

        A reversal that fails is reported against its ID and does not stop
        the others.
        """
        ids = list(dict.fromkeys(txn_ids))
        if not ids:
            raise ValueError("ids are required")
        result = BulkResult()
        async with self._locked(ids):
            targets = await self._repo.get_transactions_by_ids(ids)
            found = {t.id for t in targets}
            for txn_id in ids:
                if txn_id not in found:
                    result.failed[txn_id] = "Transaction not found"
            if not targets:
                return result

            await self._repo.soft_delete_transactions([t.id for t in targets])
            outcomes = await asyncio.gather(
                *(self._reverse_if_applied(t) for t in targets), return_exceptions=True
            )
        for txn, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                log.warning(f"Balance reversal failed for deleted transaction {txn.id}: {outcome}")
                result.failed[txn.id] = str(outcome)
            else:
                result.succeeded.append(txn.id)
        log.info(f"Bulk deleted {len(result.succeeded)} transactions, {len(result.failed)} failed")
        return result

    async def bulk_update(self, txn_ids: list[str], updates: dict) -> BulkResult:
        """Apply the same edit to many transactions, one edit protocol per ID."""
        ids = list(dict.fromkeys(txn_ids))
        if not ids or not updates:
            raise ValueError("ids and updates are required")
        unknown = set(updates) - BULK_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Cannot bulk update fields: {', '.join(sorted(unknown))}")
        result = BulkResult()
        for txn_id in ids:
            try:
                await self.update_transaction(txn_id, updates)
            except (TransactionNotFoundError, LedgerError, ValueError) as e:
                log.warning(f"Bulk update failed for transaction {txn_id}: {e}")
                result.failed[txn_id] = str(e)
            else:
                result.succeeded.append(txn_id)
        return result

    async def import_transactions(
        self,
        candidates: list[Transaction],
        source: str = TransactionSource.CSV_IMPORT.value,
        import_id: str | None = None,
    ) -> ImportResult:
        """Import parsed rows.

        Probable duplicates are imported with ``pending_review`` status for
        the user to resolve later. Rows are processed in order, so a row can
        be flagged as a duplicate of an earlier row of the same import.
        """
        result = ImportResult(import_id=import_id or new_id())
        for index, candidate in enumerate(candidates):
            row = replace(candidate, source=source, import_id=result.import_id)
            evaluation = await self._run_rules(row, row.raw_text)
            result.warnings.extend(f"row {index}: {w}" for w in evaluation.warnings)
            txn = replace(
                evaluation.candidate,
                id=None,
                applied_rules=list(evaluation.applied_rules),
                balance_applied=False,
            )
            try:
                txn.validate()
            except ValueError as e:
                result.failed[index] = str(e)
                continue
            duplicate = await self._detector.find_duplicate(txn)
            if duplicate is not None:
                txn.duplicate_status = DuplicateStatus.PENDING_REVIEW
                txn.duplicate_of = duplicate.id
                result.duplicates[index] = duplicate.id
            saved = await self._repo.save_transaction(txn)
            result.created.append(saved)
            try:
                await self._ledger.apply_transaction(saved)
            except LedgerError as e:
                log.warning(f"Imported transaction {saved.id} awaits balance backfill: {e}")
                result.failed[index] = f"Saved as {saved.id} but balance not applied: {e}"
        log.info(
            f"Import {result.import_id}: {len(result.created)} created, "
            f"{len(result.duplicates)} flagged as duplicates, {len(result.failed)} failed"
        )
        return result

    async def undo_import(self, import_id: str) -> BulkResult:
        """Delete every live transaction of an import, reversing their balances."""
        txns = await self._repo.get_transactions_by_import(import_id)
        if not txns:
            raise TransactionNotFoundError(f"No transactions left from import {import_id}")
        log.info(f"Undoing import {import_id} ({len(txns)} transactions)")
        return await self.bulk_delete([t.id for t in txns])

    async def resolve_duplicate(
        self, txn_id: str, resolution: DuplicateResolution
    ) -> Transaction:
        """Settle a transaction imported as a probable duplicate."""
        flagged = await self._get_live(txn_id)
        async with self._locked([txn_id, flagged.duplicate_of or txn_id]):
            txn = await self._get_live(txn_id)
            if txn.duplicate_status != DuplicateStatus.PENDING_REVIEW:
                raise ValueError(f"Transaction {txn_id} is not awaiting duplicate review")
            if resolution == DuplicateResolution.REPLACE_EXISTING and txn.duplicate_of:
                existing = await self._repo.get_transaction_by_id(txn.duplicate_of)
                if existing is not None:
                    await self._remove(existing)
                    log.info(f"Transaction {txn_id} replaced {existing.id}")
            txn.duplicate_status = DuplicateStatus.CONFIRMED
            return await self._write_edit(txn)

    async def _run_rules(self, candidate: Transaction, raw_text: str | None) -> RuleEvaluation:
        """Run automation unless the candidate was already processed by a preview."""
        if candidate.applied_rules:
            return RuleEvaluation(candidate=candidate, applied_rules=list(candidate.applied_rules))
        if raw_text is not None and candidate.raw_text is None:
            candidate = replace(candidate, raw_text=raw_text)
        return await apply_automation_rules(
            self._repo, candidate, raw_text, self._note_delimiter
        )

    async def _apply_new(self, saved: Transaction) -> None:
        """Apply a freshly written transaction's balance effect."""
        try:
            await self._ledger.apply_transaction(saved)
        except LedgerError as e:
            log.error(f"Balance not applied for transaction {saved.id}: {e}")
            raise LedgerError(
                f"Transaction {saved.id} saved but balance not applied: {e}", saved.id
            ) from e

    async def _write_edit(self, txn: Transaction) -> Transaction:
        saved = await self._repo.update_transaction(txn)
        if saved is None:
            raise TransactionNotFoundError(f"Transaction {txn.id} not found")
        return saved

    async def _remove(self, txn: Transaction) -> None:
        """Soft-delete one transaction and reverse its balance effect."""
        await self._repo.soft_delete_transactions([txn.id])
        await self._reverse_if_applied(txn)

    async def _reverse_if_applied(self, txn: Transaction) -> None:
        if txn.balance_applied:
            await self._ledger.reverse_transaction(txn)

    async def _get_live(self, txn_id: str) -> Transaction:
        txn = await self._repo.get_transaction_by_id(txn_id)
        if txn is None:
            raise TransactionNotFoundError(f"Transaction {txn_id} not found")
        return txn


def _coerce_changes(changes: dict) -> dict:
    """Convert loosely typed edit values to model types.

    Raises ValueError for values that cannot be converted.
    """
    coerced = dict(changes)
    if "type" in coerced:
        coerced["type"] = TransactionType(coerced["type"])
    if "amount" in coerced:
        try:
            coerced["amount"] = Decimal(str(coerced["amount"]))
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {changes['amount']!r}") from e
    if isinstance(coerced.get("date"), str):
        coerced["date"] = date.fromisoformat(coerced["date"])
    if isinstance(coerced.get("time"), str):
        coerced["time"] = time.fromisoformat(coerced["time"]) if coerced["time"] else None
    return coerced


def _balance_changed(prior: Transaction, updated: Transaction) -> bool:
    """Check whether any field that determines the balance effect changed."""
    return any(getattr(prior, name) != getattr(updated, name) for name in BALANCE_FIELDS)


class TransactionNotFoundError(Exception):
    """Exception raised when a transaction does not exist or was deleted."""
