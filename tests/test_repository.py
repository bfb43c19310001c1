"""Tests for database repository."""

from dataclasses import replace
from datetime import date, datetime, time
from decimal import Decimal

import pytest
from conftest import make_transaction

from fintrack.db.models import (
    Account,
    ActionOutcome,
    AppliedRule,
    AutomationRule,
    ConditionLogic,
    DescriptionContains,
    DuplicateStatus,
    OutcomeStatus,
    RuleType,
    SetCategory,
    TransactionType,
)
from fintrack.db.repository import AccountNotFoundError, Repository


class TestRepositoryConnection:
    """Tests for repository connection management."""

    async def test_connect_creates_schema(self, temp_db_path):
        """Test that connect creates the database schema."""
        repo = Repository(temp_db_path)
        await repo.connect()
        version = await repo._get_schema_version()
        assert version > 0
        await repo.close()

    async def test_close_clears_connection(self, temp_db_path):
        """Test that close clears the connection."""
        repo = Repository(temp_db_path)
        await repo.connect()
        await repo.close()
        assert repo._connection is None

    async def test_close_without_connect(self, temp_db_path):
        """Test that close is safe without connect."""
        repo = Repository(temp_db_path)
        await repo.close()
        assert repo._connection is None

    async def test_connect_twice_skips_migrations(self, temp_db_path):
        """Test that connecting to existing DB skips migrations."""
        repo1 = Repository(temp_db_path)
        await repo1.connect()
        await repo1.close()
        repo2 = Repository(temp_db_path)
        await repo2.connect()
        version = await repo2._get_schema_version()
        assert version > 0
        await repo2.close()

    async def test_migrations_run_on_fresh_db(self, temp_dir):
        """Test migrations bring a fresh database to the latest version."""
        from fintrack.db.migrations import SCHEMA_VERSION

        repo = Repository(temp_dir / "fresh.db")
        await repo.connect()
        assert await repo._get_schema_version() == SCHEMA_VERSION
        cursor = await repo._connection.execute("PRAGMA table_info(transactions)")
        columns = {row["name"] for row in await cursor.fetchall()}
        assert {"duplicate_status", "duplicate_of", "import_id", "balance_applied"} <= columns
        await repo.close()


class TestAccountOperations:
    """Tests for account CRUD operations."""

    async def test_save_new_account(self, repository):
        """Test saving a new account assigns an ID."""
        saved = await repository.save_account(
            Account(id=None, name="Nequi", currency="COP", balance=Decimal("12.50"))
        )
        assert saved.id is not None
        assert saved.name == "Nequi"
        assert saved.currency == "COP"
        assert saved.balance == Decimal("12.50")

    async def test_update_does_not_touch_balance(self, repository, account_a):
        """Test that saving an account never rewrites its balance."""
        account_a.name = "Savings 2"
        account_a.balance = Decimal("1")
        saved = await repository.save_account(account_a)
        assert saved.name == "Savings 2"
        assert saved.balance == Decimal("1000000")

    async def test_get_account_by_id_not_found(self, repository):
        """Test getting non-existent account returns None."""
        assert await repository.get_account_by_id("missing") is None

    async def test_get_all_accounts_skips_deleted(self, repository, account_a, account_b):
        """Test deleted accounts are not listed."""
        account_b.deleted_at = datetime.now()
        await repository.save_account(account_b)
        accounts = await repository.get_all_accounts()
        assert [a.id for a in accounts] == [account_a.id]

    async def test_adjust_balances(self, repository, account_a, account_b):
        """Test deltas are added to each account."""
        await repository._adjust_balances(
            {account_a.id: Decimal("-10.25"), account_b.id: Decimal("10.25")}
        )
        assert (await repository.get_account_by_id(account_a.id)).balance == Decimal("999989.75")
        assert (await repository.get_account_by_id(account_b.id)).balance == Decimal("200010.25")

    async def test_adjust_balances_rolls_back(self, repository, account_a):
        """Test a missing account rolls back the whole write."""
        with pytest.raises(AccountNotFoundError):
            await repository._adjust_balances(
                {account_a.id: Decimal("-5"), "missing": Decimal("5")}
            )
        assert (await repository.get_account_by_id(account_a.id)).balance == Decimal("1000000")

    async def test_adjust_balances_writes_flag(self, repository, account_a):
        """Test the transaction's ledger flag is written with the balance."""
        txn = await repository.save_transaction(make_transaction(account_id=account_a.id))
        await repository._adjust_balances({account_a.id: Decimal("-50000")}, txn.id, True)
        assert (await repository.get_transaction_by_id(txn.id)).balance_applied is True


class TestRuleOperations:
    """Tests for automation rule operations."""

    async def test_save_new_rule(self, repository):
        """Test conditions and actions survive storage."""
        rule = AutomationRule(
            id=None,
            name="Food",
            conditions=[DescriptionContains(("uber eats", "rappi"))],
            actions=[SetCategory("cat-food")],
            condition_logic=ConditionLogic.OR,
            priority=5,
            rule_type=RuleType.TRANSFER,
            transfer_to_account_id="acc-2",
        )
        saved = await repository.save_rule(rule)
        assert saved.id is not None
        assert saved.conditions == rule.conditions
        assert saved.actions == rule.actions
        assert saved.condition_logic == ConditionLogic.OR
        assert saved.rule_type == RuleType.TRANSFER
        assert saved.transfer_to_account_id == "acc-2"

    async def test_update_existing_rule(self, repository):
        """Test updating a rule keeps its ID."""
        saved = await repository.save_rule(AutomationRule(id=None, name="Old"))
        saved.name = "New"
        saved.priority = 3
        updated = await repository.save_rule(saved)
        assert updated.id == saved.id
        assert updated.name == "New"
        assert updated.priority == 3

    async def test_get_active_rules_ordered(self, repository):
        """Test active rules come back by priority, then creation time."""
        await repository.save_rule(
            AutomationRule(id=None, name="Late", created_at=datetime(2024, 2, 1))
        )
        await repository.save_rule(
            AutomationRule(id=None, name="Early", created_at=datetime(2024, 1, 1))
        )
        await repository.save_rule(AutomationRule(id=None, name="Top", priority=9))
        await repository.save_rule(AutomationRule(id=None, name="Off", is_active=False))
        rules = await repository.get_active_rules()
        assert [r.name for r in rules] == ["Top", "Early", "Late"]


class TestTransactionOperations:
    """Tests for transaction operations."""

    async def test_save_new_transaction(self, repository, account_a, account_b):
        """Test every field survives storage."""
        txn = make_transaction(
            account_id=account_a.id,
            type=TransactionType.TRANSFER,
            transfer_to_account_id=account_b.id,
            transfer_id="pair-1",
            amount=Decimal("10000.50"),
            time=time(14, 30),
            raw_text="Transferencia 10.000",
            source="ai_parse",
            applied_rules=[
                AppliedRule(
                    rule_id="r1",
                    rule_name="Transfers",
                    actions={"link_to_account": account_b.id},
                    outcomes=[ActionOutcome("link_to_account", OutcomeStatus.APPLIED)],
                )
            ],
            duplicate_status=DuplicateStatus.PENDING_REVIEW,
            duplicate_of="t0",
            import_id="imp-1",
        )
        saved = await repository.save_transaction(txn)

        assert saved.id is not None
        assert saved.amount == Decimal("10000.50")
        assert saved.date == date(2024, 1, 15)
        assert saved.time == time(14, 30)
        assert saved.transfer_to_account_id == account_b.id
        assert saved.applied_rules == txn.applied_rules
        assert saved.duplicate_status == DuplicateStatus.PENDING_REVIEW
        assert saved.import_id == "imp-1"
        assert saved.balance_applied is False

    async def test_update_transaction(self, repository, account_a):
        """Test editing a transaction keeps its ID and ledger flag."""
        saved = await repository.save_transaction(
            make_transaction(account_id=account_a.id, balance_applied=True)
        )
        edited = replace(saved, description="Cena", balance_applied=False)
        updated = await repository.update_transaction(edited)
        assert updated.id == saved.id
        assert updated.description == "Cena"
        assert updated.balance_applied is True

    async def test_update_deleted_transaction(self, repository, account_a):
        """Test an edit written after a soft delete leaves the row deleted."""
        saved = await repository.save_transaction(make_transaction(account_id=account_a.id))
        await repository.soft_delete_transactions([saved.id])
        assert await repository.update_transaction(replace(saved, description="Cena")) is None
        stored = await repository.get_transaction_by_id(saved.id, include_deleted=True)
        assert stored.is_deleted
        assert stored.description == "Almuerzo restaurante"

    async def test_update_missing_transaction(self, repository):
        """Test editing an unknown ID writes nothing."""
        assert await repository.update_transaction(make_transaction(id="missing")) is None

    async def test_get_transaction_by_id_not_found(self, repository):
        """Test getting non-existent transaction returns None."""
        assert await repository.get_transaction_by_id("missing") is None

    async def test_soft_delete(self, repository, account_a):
        """Test soft-deleted rows are hidden unless asked for."""
        saved = await repository.save_transaction(make_transaction(account_id=account_a.id))
        assert await repository.soft_delete_transactions([saved.id]) == 1
        assert await repository.soft_delete_transactions([saved.id]) == 0
        assert await repository.get_transaction_by_id(saved.id) is None
        deleted = await repository.get_transaction_by_id(saved.id, include_deleted=True)
        assert deleted.is_deleted

    async def test_get_transactions_by_ids(self, repository, account_a):
        """Test only live rows among the IDs are returned."""
        one = await repository.save_transaction(make_transaction(account_id=account_a.id))
        two = await repository.save_transaction(make_transaction(account_id=account_a.id))
        await repository.soft_delete_transactions([two.id])
        found = await repository.get_transactions_by_ids([one.id, two.id, "missing"])
        assert [t.id for t in found] == [one.id]
        assert await repository.get_transactions_by_ids([]) == []

    async def test_get_transactions_in_window(self, repository, account_a, account_b):
        """Test the window query filters on account and inclusive dates."""
        inside = await repository.save_transaction(
            make_transaction(account_id=account_a.id, txn_date=date(2024, 1, 14))
        )
        await repository.save_transaction(
            make_transaction(account_id=account_a.id, txn_date=date(2024, 1, 20))
        )
        await repository.save_transaction(make_transaction(account_id=account_b.id))
        found = await repository.get_transactions_in_window(
            account_a.id, date(2024, 1, 14), date(2024, 1, 16)
        )
        assert [t.id for t in found] == [inside.id]

    async def test_get_transactions_by_raw_text(self, repository, account_a):
        """Test raw text lookups match on source too."""
        saved = await repository.save_transaction(
            make_transaction(account_id=account_a.id, raw_text="SMS", source="ai_parse")
        )
        assert [t.id for t in await repository.get_transactions_by_raw_text("SMS", "ai_parse")] == [
            saved.id
        ]
        assert await repository.get_transactions_by_raw_text("SMS", "api") == []

    async def test_unapplied_and_unreversed(self, repository, account_a):
        """Test the ledger repair queries."""
        pending = await repository.save_transaction(make_transaction(account_id=account_a.id))
        stale = await repository.save_transaction(
            make_transaction(account_id=account_a.id, balance_applied=True)
        )
        await repository.soft_delete_transactions([stale.id])

        assert [t.id for t in await repository.get_unapplied_transactions()] == [pending.id]
        assert [t.id for t in await repository.get_unreversed_transactions()] == [stale.id]
