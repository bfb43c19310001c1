"""Probable-duplicate detection for incoming transactions."""

import logging
from datetime import timedelta
from difflib import SequenceMatcher
from enum import Enum

from fintrack.db.models import Transaction
from fintrack.db.repository import Repository

log = logging.getLogger("fintrack.duplicates")


class DuplicateResolution(Enum):
    """Caller's decision about a flagged duplicate."""

    CREATE_ANYWAY = "create_anyway"
    REPLACE_EXISTING = "replace_existing"


def is_near_duplicate(candidate: Transaction, existing: Transaction, window_days: int = 0) -> bool:
    """Check the minimum duplicate bar: same account, amount and date (within the window)."""
    if existing.is_deleted or (candidate.id is not None and existing.id == candidate.id):
        return False
    return (
        existing.account_id == candidate.account_id
        and abs(existing.amount) == abs(candidate.amount)
        and abs((existing.date - candidate.date).days) <= window_days
    )


def description_similarity(a: str | None, b: str | None) -> float:
    """Case-insensitive similarity ratio of two descriptions."""
    return SequenceMatcher(None, (a or "").lower(), (b or "").lower()).ratio()


def find_candidate_duplicate(
    candidate: Transaction,
    recent: list[Transaction],
    window_days: int = 0,
) -> Transaction | None:
    """Find the existing transaction a candidate most probably duplicates.

    Captured from the same raw text and source is an exact match. Otherwise
    near matches are ranked by description similarity, then by closest date.
    """
    if candidate.raw_text and candidate.source:
        for existing in recent:
            if (
                not existing.is_deleted
                and (candidate.id is None or existing.id != candidate.id)
                and existing.raw_text == candidate.raw_text
                and existing.source == candidate.source
            ):
                return existing
    near = [e for e in recent if is_near_duplicate(candidate, e, window_days)]
    if not near:
        return None
    return max(
        near,
        key=lambda e: (
            description_similarity(candidate.description, e.description),
            -abs((e.date - candidate.date).days),
        ),
    )


class DuplicateDetector:
    """Flags probable duplicates; the caller decides what to do with them."""

    def __init__(self, repo: Repository, window_days: int = 0):
        self._repo = repo
        self._window_days = window_days

    @property
    def window_days(self) -> int:
        return self._window_days

    async def find_duplicate(self, candidate: Transaction) -> Transaction | None:
        """Find an existing stored transaction the candidate probably duplicates."""
        recent = await self._load_window(candidate)
        match = find_candidate_duplicate(candidate, recent, self._window_days)
        if match is not None:
            log.info(f"Candidate {candidate.description!r} looks like duplicate of {match.id}")
        return match

    async def find_duplicates(self, candidates: list[Transaction]) -> dict[int, Transaction]:
        """Check a batch of candidates; returns matches keyed by candidate index.

        Earlier rows of the same batch count as existing transactions for
        later rows.
        """
        duplicates = {}
        for index, candidate in enumerate(candidates):
            earlier = candidates[:index]
            recent = await self._load_window(candidate) + earlier
            match = find_candidate_duplicate(candidate, recent, self._window_days)
            if match is not None:
                duplicates[index] = match
        return duplicates

    async def _load_window(self, candidate: Transaction) -> list[Transaction]:
        """Load stored transactions that could match the candidate."""
        window = timedelta(days=self._window_days)
        recent = await self._repo.get_transactions_in_window(
            candidate.account_id, candidate.date - window, candidate.date + window
        )
        if candidate.raw_text and candidate.source:
            recent.extend(
                await self._repo.get_transactions_by_raw_text(candidate.raw_text, candidate.source)
            )
        return recent
