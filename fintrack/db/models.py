"""Database models and schema definitions."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from datetime import time as TimeOfDay
from decimal import Decimal
from enum import Enum

log = logging.getLogger("fintrack.rules")


class TransactionType(Enum):
    """Kind of money movement a transaction records."""

    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


class TransactionSource(Enum):
    """Known origins of a transaction."""

    MANUAL = "manual"
    CSV_IMPORT = "csv_import"
    AI_PARSE = "ai_parse"
    API = "api"


class DuplicateStatus(Enum):
    """Review state of a transaction flagged as a probable duplicate."""

    PENDING_REVIEW = "pending_review"
    CONFIRMED = "confirmed"


class ConditionLogic(Enum):
    """How a rule combines its conditions."""

    AND = "and"
    OR = "or"


class RuleType(Enum):
    """Purpose of an automation rule."""

    GENERAL = "general"
    ACCOUNT_DETECTION = "account_detection"
    TRANSFER = "transfer"


class OutcomeStatus(Enum):
    """Result of applying a single rule action."""

    APPLIED = "applied"
    SKIPPED_CONFLICT = "skipped_conflict"
    SKIPPED_INVALID = "skipped_invalid"


# Conditions


@dataclass(frozen=True)
class DescriptionContains:
    """Description contains any of the substrings (case-insensitive)."""

    substrings: tuple[str, ...]


@dataclass(frozen=True)
class DescriptionRegex:
    """Description matches a regular expression (case-insensitive)."""

    pattern: str


@dataclass(frozen=True)
class RawTextContains:
    """Unparsed source text contains any of the substrings."""

    substrings: tuple[str, ...]


@dataclass(frozen=True)
class AmountBetween:
    """Absolute amount within an inclusive range."""

    minimum: Decimal
    maximum: Decimal


@dataclass(frozen=True)
class AmountEquals:
    """Absolute amount equals a value."""

    amount: Decimal


@dataclass(frozen=True)
class FromAccount:
    """Transaction is booked against an account."""

    account_id: str


@dataclass(frozen=True)
class ToAccount:
    """Transfer destination is an account."""

    account_id: str


@dataclass(frozen=True)
class SourceIs:
    """Transaction origin is one of the sources."""

    sources: tuple[str, ...]


@dataclass(frozen=True)
class CategoryIs:
    """Transaction currently has a category."""

    category_id: str


Condition = (
    DescriptionContains
    | DescriptionRegex
    | RawTextContains
    | AmountBetween
    | AmountEquals
    | FromAccount
    | ToAccount
    | SourceIs
    | CategoryIs
)


# Actions


@dataclass(frozen=True)
class SetType:
    """Overwrite the transaction type."""

    type: TransactionType


@dataclass(frozen=True)
class SetCategory:
    """Overwrite the category; None clears it."""

    category_id: str | None


@dataclass(frozen=True)
class SetAccount:
    """Overwrite the booking account."""

    account_id: str


@dataclass(frozen=True)
class LinkToAccount:
    """Turn the transaction into a transfer to an account."""

    account_id: str


@dataclass(frozen=True)
class AutoReconcile:
    """Mark the transaction reconciled."""

    enabled: bool = True


@dataclass(frozen=True)
class AddNote:
    """Append a note."""

    note: str


Action = SetType | SetCategory | SetAccount | LinkToAccount | AutoReconcile | AddNote


@dataclass
class Account:
    """Money account with a cached running balance."""

    id: str | None
    name: str
    currency: str = "USD"
    balance: Decimal = Decimal("0")
    is_active: bool = True
    deleted_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class AutomationRule:
    """Automation rule matched against every transaction write."""

    id: str | None
    name: str
    conditions: list[Condition] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    priority: int = 0
    is_active: bool = True
    rule_type: RuleType = RuleType.GENERAL
    transfer_to_account_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ActionOutcome:
    """What happened to one action of a matched rule."""

    action: str
    status: OutcomeStatus
    detail: str | None = None


@dataclass
class AppliedRule:
    """Provenance record for a rule that fired on a transaction."""

    rule_id: str | None
    rule_name: str
    actions: dict = field(default_factory=dict)
    outcomes: list[ActionOutcome] = field(default_factory=list)


@dataclass
class Transaction:
    """Transaction record, persisted or still a candidate."""

    id: str | None
    account_id: str
    type: TransactionType
    amount: Decimal
    date: date
    description: str
    time: TimeOfDay | None = None
    transfer_to_account_id: str | None = None
    transfer_id: str | None = None
    category_id: str | None = None
    notes: str | None = None
    source: str = TransactionSource.MANUAL.value
    raw_text: str | None = None
    is_reconciled: bool = False
    reconciled_at: datetime | None = None
    applied_rules: list[AppliedRule] = field(default_factory=list)
    duplicate_status: DuplicateStatus | None = None
    duplicate_of: str | None = None
    import_id: str | None = None
    balance_applied: bool = False
    deleted_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_deleted(self) -> bool:
        """Check if the transaction has been soft-deleted."""
        return self.deleted_at is not None

    def validate(self) -> None:
        """Raise ValueError if the transfer and amount invariants do not hold."""
        if self.amount < 0:
            raise ValueError(f"Amount must be a non-negative magnitude, got {self.amount}")
        if not self.account_id:
            raise ValueError("Transaction requires an account")
        if self.type == TransactionType.TRANSFER:
            if not self.transfer_to_account_id:
                raise ValueError("Transfer requires a destination account")
            if self.transfer_to_account_id == self.account_id:
                raise ValueError("Transfer destination must differ from the source account")
        elif self.transfer_to_account_id is not None:
            raise ValueError(f"{self.type.value} transaction cannot have a transfer destination")


BALANCE_FIELDS = ("type", "amount", "account_id", "transfer_to_account_id")


def conditions_from_dict(data: dict | None) -> list[Condition]:
    """Build condition variants from their stored JSON shape.

    Malformed entries are dropped so that one bad predicate never makes
    the whole rule unreadable.
    """
    conditions: list[Condition] = []
    for key, value in (data or {}).items():
        if value is None:
            continue
        try:
            conditions.append(_condition_from_item(key, value))
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            log.warning(f"Dropping malformed condition {key}={value!r}: {e}")
    return conditions


def _condition_from_item(key: str, value) -> Condition:
    """Build one condition from a stored key and value."""
    if key == "description_contains":
        return DescriptionContains(_as_strings(value))
    if key == "description_regex":
        return DescriptionRegex(str(value))
    if key == "raw_text_contains":
        return RawTextContains(_as_strings(value))
    if key == "amount_between":
        if not isinstance(value, (list, tuple)):
            raise TypeError("amount_between needs [min, max]")
        low, high = value
        return AmountBetween(_as_decimal(low), _as_decimal(high))
    if key == "amount_equals":
        return AmountEquals(_as_decimal(value))
    if key == "from_account":
        return FromAccount(str(value))
    if key == "to_account":
        return ToAccount(str(value))
    if key == "source":
        return SourceIs(_as_strings(value))
    if key == "category":
        return CategoryIs(str(value))
    raise KeyError(f"unknown condition {key}")


def conditions_to_dict(conditions: list[Condition]) -> dict:
    """Convert condition variants to their stored JSON shape."""
    data: dict = {}
    for condition in conditions:
        if isinstance(condition, DescriptionContains):
            data["description_contains"] = list(condition.substrings)
        elif isinstance(condition, DescriptionRegex):
            data["description_regex"] = condition.pattern
        elif isinstance(condition, RawTextContains):
            data["raw_text_contains"] = list(condition.substrings)
        elif isinstance(condition, AmountBetween):
            data["amount_between"] = [str(condition.minimum), str(condition.maximum)]
        elif isinstance(condition, AmountEquals):
            data["amount_equals"] = str(condition.amount)
        elif isinstance(condition, FromAccount):
            data["from_account"] = condition.account_id
        elif isinstance(condition, ToAccount):
            data["to_account"] = condition.account_id
        elif isinstance(condition, SourceIs):
            data["source"] = list(condition.sources)
        elif isinstance(condition, CategoryIs):
            data["category"] = condition.category_id
        else:
            raise TypeError(f"Unknown condition type: {type(condition).__name__}")
    return data


def actions_from_dict(data: dict | None) -> list[Action]:
    """Build action variants from their stored JSON shape."""
    actions: list[Action] = []
    for key, value in (data or {}).items():
        try:
            action = _action_from_item(key, value)
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Dropping malformed action {key}={value!r}: {e}")
            continue
        if action is not None:
            actions.append(action)
    return actions


def _action_from_item(key: str, value) -> Action | None:
    """Build one action from a stored key and value."""
    if key == "set_type":
        return SetType(TransactionType(value)) if value is not None else None
    if key == "set_category":
        return SetCategory(str(value) if value is not None else None)
    if key == "set_account":
        return SetAccount(str(value)) if value is not None else None
    if key == "link_to_account":
        return LinkToAccount(str(value)) if value is not None else None
    if key == "auto_reconcile":
        return AutoReconcile(bool(value)) if value is not None else None
    if key == "add_note":
        return AddNote(str(value)) if value else None
    raise KeyError(f"unknown action {key}")


def actions_to_dict(actions: list[Action]) -> dict:
    """Convert action variants to their stored JSON shape."""
    data: dict = {}
    for action in actions:
        if isinstance(action, SetType):
            data["set_type"] = action.type.value
        elif isinstance(action, SetCategory):
            data["set_category"] = action.category_id
        elif isinstance(action, SetAccount):
            data["set_account"] = action.account_id
        elif isinstance(action, LinkToAccount):
            data["link_to_account"] = action.account_id
        elif isinstance(action, AutoReconcile):
            data["auto_reconcile"] = action.enabled
        elif isinstance(action, AddNote):
            data["add_note"] = action.note
        else:
            raise TypeError(f"Unknown action type: {type(action).__name__}")
    return data


def _as_strings(value) -> tuple[str, ...]:
    """Normalize a string or list of strings to a tuple."""
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _as_decimal(value) -> Decimal:
    """Convert a stored number to Decimal without float noise."""
    if isinstance(value, bool):
        raise TypeError("boolean is not an amount")
    return Decimal(str(value))
