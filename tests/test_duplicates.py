"""Tests for duplicate detection."""

from datetime import date, datetime
from decimal import Decimal

from conftest import make_transaction

from fintrack.duplicates import (
    DuplicateDetector,
    description_similarity,
    find_candidate_duplicate,
    is_near_duplicate,
)


class TestIsNearDuplicate:
    """Tests for the minimum duplicate bar."""

    def test_same_account_amount_date(self):
        """Test identical ledger fields match."""
        assert is_near_duplicate(make_transaction(), make_transaction(id="t1"))

    def test_different_amount(self):
        """Test a different amount is not a duplicate."""
        existing = make_transaction(id="t1", amount=Decimal("50001"))
        assert not is_near_duplicate(make_transaction(), existing)

    def test_different_account(self):
        """Test a different account is not a duplicate."""
        existing = make_transaction(id="t1", account_id="acc-2")
        assert not is_near_duplicate(make_transaction(), existing)

    def test_date_window(self):
        """Test dates within the window match."""
        existing = make_transaction(id="t1", txn_date=date(2024, 1, 17))
        assert not is_near_duplicate(make_transaction(), existing)
        assert is_near_duplicate(make_transaction(), existing, window_days=2)

    def test_deleted_ignored(self):
        """Test deleted transactions never match."""
        existing = make_transaction(id="t1", deleted_at=datetime.now())
        assert not is_near_duplicate(make_transaction(), existing)

    def test_self_ignored(self):
        """Test a stored transaction is not its own duplicate."""
        txn = make_transaction(id="t1")
        assert not is_near_duplicate(txn, txn)


class TestFindCandidateDuplicate:
    """Tests for ranking duplicate candidates."""

    def test_exact_raw_text_wins(self):
        """Test the same raw text and source is matched regardless of amount."""
        candidate = make_transaction(raw_text="Compra 50.000 EXITO", source="ai_parse")
        same_fields = make_transaction(id="t1")
        same_text = make_transaction(
            id="t2",
            amount=Decimal("1"),
            txn_date=date(2023, 5, 1),
            raw_text="Compra 50.000 EXITO",
            source="ai_parse",
        )
        assert find_candidate_duplicate(candidate, [same_fields, same_text]).id == "t2"

    def test_raw_text_needs_same_source(self):
        """Test raw text from another source is not an exact match."""
        candidate = make_transaction(amount=Decimal("9"), raw_text="x", source="ai_parse")
        other = make_transaction(id="t1", raw_text="x", source="api")
        assert find_candidate_duplicate(candidate, [other]) is None

    def test_prefers_similar_description(self):
        """Test ties on amount and date are ranked by description."""
        candidate = make_transaction(description="Almuerzo restaurante")
        unrelated = make_transaction(id="t1", description="Gasolina")
        similar = make_transaction(id="t2", description="ALMUERZO RESTAURANTE")
        assert find_candidate_duplicate(candidate, [unrelated, similar]).id == "t2"

    def test_prefers_closer_date(self):
        """Test equal descriptions are ranked by date distance."""
        candidate = make_transaction()
        far = make_transaction(id="t1", txn_date=date(2024, 1, 12))
        near = make_transaction(id="t2", txn_date=date(2024, 1, 14))
        assert find_candidate_duplicate(candidate, [far, near], window_days=3).id == "t2"

    def test_no_match(self):
        """Test an empty history has no duplicate."""
        assert find_candidate_duplicate(make_transaction(), []) is None

    def test_similarity(self):
        """Test similarity is case-insensitive."""
        assert description_similarity("UBER", "uber") == 1.0
        assert description_similarity(None, "uber") == 0.0


class TestDuplicateDetector:
    """Tests for DuplicateDetector against the repository."""

    async def test_finds_stored_duplicate(self, repository, account_a):
        """Test a stored transaction is found."""
        stored = await repository.save_transaction(make_transaction(account_id=account_a.id))
        detector = DuplicateDetector(repository)

        match = await detector.find_duplicate(make_transaction(account_id=account_a.id))

        assert match.id == stored.id

    async def test_finds_raw_text_outside_window(self, repository, account_a):
        """Test the same captured text is found on any date."""
        stored = await repository.save_transaction(
            make_transaction(account_id=account_a.id, raw_text="SMS 123", source="ai_parse")
        )
        candidate = make_transaction(
            account_id=account_a.id,
            txn_date=date(2024, 3, 1),
            raw_text="SMS 123",
            source="ai_parse",
        )
        assert (await DuplicateDetector(repository).find_duplicate(candidate)).id == stored.id

    async def test_window_days(self, repository, account_a):
        """Test the configured window widens the date match."""
        await repository.save_transaction(
            make_transaction(account_id=account_a.id, txn_date=date(2024, 1, 13))
        )
        candidate = make_transaction(account_id=account_a.id)
        assert await DuplicateDetector(repository).find_duplicate(candidate) is None
        detector = DuplicateDetector(repository, window_days=2)
        assert detector.window_days == 2
        assert await detector.find_duplicate(candidate) is not None

    async def test_ignores_deleted(self, repository, account_a):
        """Test soft-deleted transactions are not duplicates."""
        stored = await repository.save_transaction(make_transaction(account_id=account_a.id))
        await repository.soft_delete_transactions([stored.id])
        candidate = make_transaction(account_id=account_a.id)
        assert await DuplicateDetector(repository).find_duplicate(candidate) is None

    async def test_batch_counts_earlier_rows(self, repository, account_a):
        """Test a repeated row within one batch is flagged."""
        rows = [
            make_transaction(account_id=account_a.id, description="Cafe"),
            make_transaction(account_id=account_a.id, amount=Decimal("1"), description="Pan"),
            make_transaction(account_id=account_a.id, description="Cafe"),
        ]
        duplicates = await DuplicateDetector(repository).find_duplicates(rows)
        assert list(duplicates) == [2]
        assert duplicates[2] is rows[0]
