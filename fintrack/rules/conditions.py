"""Condition evaluation for automation rules."""

import logging
import re

from fintrack.db.models import (
    AmountBetween,
    AmountEquals,
    AutomationRule,
    CategoryIs,
    Condition,
    ConditionLogic,
    DescriptionContains,
    DescriptionRegex,
    FromAccount,
    RawTextContains,
    SourceIs,
    ToAccount,
    Transaction,
)

log = logging.getLogger("fintrack.rules")


def compile_pattern(pattern: str) -> re.Pattern | None:
    """Compile a rule regex, returning None if it is invalid."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        log.warning(f"Invalid description_regex {pattern!r}: {e}")
        return None


def is_present(condition: Condition, raw_text: str | None) -> bool:
    """Check whether a condition takes part in the rule's combination.

    A raw text predicate is left out when there is no raw text, so that
    manually entered transactions are not rejected for lacking one.
    """
    if isinstance(condition, RawTextContains):
        return bool(raw_text)
    return True


def matches(
    condition: Condition,
    candidate: Transaction,
    raw_text: str | None,
    patterns: dict[str, re.Pattern | None] | None = None,
) -> bool:
    """Evaluate a single condition against a candidate transaction."""
    if isinstance(condition, DescriptionContains):
        return _contains_any(candidate.description, condition.substrings)
    if isinstance(condition, DescriptionRegex):
        compiled = _lookup_pattern(condition.pattern, patterns)
        return compiled is not None and compiled.search(candidate.description or "") is not None
    if isinstance(condition, RawTextContains):
        return _contains_any(raw_text, condition.substrings)
    if isinstance(condition, AmountBetween):
        return condition.minimum <= abs(candidate.amount) <= condition.maximum
    if isinstance(condition, AmountEquals):
        return abs(candidate.amount) == condition.amount
    if isinstance(condition, FromAccount):
        return candidate.account_id == condition.account_id
    if isinstance(condition, ToAccount):
        return candidate.transfer_to_account_id == condition.account_id
    if isinstance(condition, SourceIs):
        return candidate.source in condition.sources
    if isinstance(condition, CategoryIs):
        return candidate.category_id == condition.category_id
    raise TypeError(f"Unknown condition type: {type(condition).__name__}")


def evaluate(
    rule: AutomationRule,
    candidate: Transaction,
    raw_text: str | None = None,
    patterns: dict[str, re.Pattern | None] | None = None,
) -> bool:
    """Combine all present conditions of a rule under its condition logic.

    With no present conditions an AND rule matches everything and an OR
    rule matches nothing.
    """
    text = raw_text if raw_text is not None else candidate.raw_text
    present = [c for c in rule.conditions if is_present(c, text)]
    if rule.condition_logic == ConditionLogic.OR:
        return any(matches(c, candidate, text, patterns) for c in present)
    return all(matches(c, candidate, text, patterns) for c in present)


def _contains_any(text: str | None, substrings: tuple[str, ...]) -> bool:
    """Case-insensitive check that text contains any non-empty substring."""
    if not text:
        return False
    lowered = text.lower()
    return any(s and s.lower() in lowered for s in substrings)


def _lookup_pattern(
    pattern: str, patterns: dict[str, re.Pattern | None] | None
) -> re.Pattern | None:
    """Get a compiled pattern from the cache, compiling it on first use."""
    if patterns is None:
        return compile_pattern(pattern)
    if pattern not in patterns:
        patterns[pattern] = compile_pattern(pattern)
    return patterns[pattern]
