"""Application wiring for fintrack."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from fintrack.api import ParseWorkerClient
from fintrack.config import Config, load_config
from fintrack.db.repository import Repository
from fintrack.duplicates import DuplicateDetector
from fintrack.ledger import BalanceLedger, BulkResult
from fintrack.rules import RuleEvaluation
from fintrack.services import TransactionService

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class FinTrack:
    """Connects storage and builds the rule engine, ledger and transaction service."""

    def __init__(self, config: Config | None = None):
        self._config = config or load_config()
        self._repository: Repository | None = None
        self._ledger: BalanceLedger | None = None
        self._transactions: TransactionService | None = None

    @property
    def config(self) -> Config:
        """Get application configuration."""
        return self._config

    @property
    def repository(self) -> Repository | None:
        """Get the database repository."""
        return self._repository

    @property
    def ledger(self) -> BalanceLedger | None:
        """Get the balance ledger."""
        return self._ledger

    @property
    def transactions(self) -> TransactionService | None:
        """Get the transaction service."""
        return self._transactions

    async def __aenter__(self) -> "FinTrack":
        """Connect to the database and wire the services."""
        self._repository = Repository(self._config.database.path)
        await self._repository.connect()
        self._ledger = BalanceLedger(self._repository)
        detector = DuplicateDetector(self._repository, self._config.duplicates.window_days)
        self._transactions = TransactionService(
            self._repository,
            self._ledger,
            detector,
            self._config.rules.note_delimiter,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the database connection."""
        if self._repository:
            await self._repository.close()
            self._repository = None
        self._ledger = None
        self._transactions = None

    async def parse_and_preview(self, text: str) -> RuleEvaluation:
        """Parse free text with the worker and run automation on the result."""
        async with ParseWorkerClient(self._config.parser) as client:
            result = await client.parse(text)
        return await self._transactions.preview(result.to_candidate(raw_text=text), text)


async def run_backfill(config: Config) -> BulkResult:
    """Apply or reverse every balance effect left pending by a failed write."""
    async with FinTrack(config) as app:
        return await app.ledger.backfill_pending()


def main(argv: list[str] | None = None) -> int:  # pragma: no cover
    """Entry point for the balance backfill command."""
    parser = argparse.ArgumentParser(
        prog="fintrack-backfill",
        description="Repair account balances after failed balance writes.",
    )
    parser.add_argument("--config", type=Path, help="path to config.toml")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.logging.level)
    result = asyncio.run(run_backfill(config))
    for txn_id in result.succeeded:
        print(f"ok      {txn_id}")
    for txn_id, error in result.failed.items():
        print(f"failed  {txn_id}: {error}")
    return 0 if result.ok else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
