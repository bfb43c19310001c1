"""Client for the transaction parse worker."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal

import httpx

from fintrack.config import ParserConfig
from fintrack.db.models import Transaction, TransactionSource, TransactionType

log = logging.getLogger("fintrack.api")


@dataclass
class ParsedTransaction:
    """Fields the worker extracted from free text."""

    description: str
    amount: Decimal
    type: TransactionType | None
    source: str | None
    date: date | None
    time: time | None
    confidence: float | None


@dataclass
class ResolvedFields:
    """References the worker resolved against the user's data."""

    account_id: str | None
    category_id: str | None


@dataclass
class ParseResult:
    """Parse worker response."""

    parsed: ParsedTransaction
    resolved: ResolvedFields

    def to_candidate(self, raw_text: str | None = None) -> Transaction:
        """Build a candidate transaction for the rules engine."""
        return Transaction(
            id=None,
            account_id=self.resolved.account_id or "",
            type=self.parsed.type or TransactionType.EXPENSE,
            amount=abs(self.parsed.amount),
            date=self.parsed.date or date.today(),
            time=self.parsed.time,
            description=self.parsed.description,
            category_id=self.resolved.category_id,
            source=self.parsed.source or TransactionSource.AI_PARSE.value,
            raw_text=raw_text,
        )


class ParseWorkerClient:
    """Async client for the parse worker that turns bank text into transactions."""

    def __init__(self, config: ParserConfig):
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ParseWorkerClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self._config.url,
            headers=self._get_headers(),
            timeout=self._config.timeout,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authorization."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def parse(self, text: str) -> ParseResult:
        """Send free text to the worker and return the extracted transaction."""
        if not text or not text.strip():
            raise ValueError("Text is required")
        response = await self._client.post("/parse", json={"text": text})
        if response.is_error:
            message = self._error_message(response)
            log.warning(f"Parse worker returned {response.status_code}: {message}")
            raise ParseWorkerError(message, response.status_code)
        return self._parse_result(response.json())

    def _error_message(self, response: httpx.Response) -> str:
        """Extract the worker's error message from a failed response."""
        try:
            return response.json().get("error") or "Parse failed"
        except ValueError:
            return "Worker error"

    def _parse_result(self, data: dict) -> ParseResult:
        """Parse the worker response body."""
        parsed = data.get("parsed", {})
        resolved = data.get("resolved", {})
        return ParseResult(
            parsed=ParsedTransaction(
                description=parsed.get("description", ""),
                amount=Decimal(str(parsed.get("amount", 0))),
                type=TransactionType(parsed["type"]) if parsed.get("type") else None,
                source=parsed.get("source"),
                date=date.fromisoformat(parsed["date"]) if parsed.get("date") else None,
                time=_parse_time(parsed.get("time")),
                confidence=parsed.get("confidence"),
            ),
            resolved=ResolvedFields(
                account_id=resolved.get("account_id"),
                category_id=resolved.get("category_id"),
            ),
        )


def _parse_time(value: str | None) -> time | None:
    """Parse an HH:MM or HH:MM:SS time."""
    if not value:
        return None
    return datetime.strptime(value, "%H:%M:%S" if value.count(":") == 2 else "%H:%M").time()


class ParseWorkerError(Exception):
    """Exception raised for parse worker errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
