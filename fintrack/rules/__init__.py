"""Rules engine for transaction automation."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

import aiosqlite

from fintrack.db.models import (
    AppliedRule,
    AutomationRule,
    ConditionLogic,
    DescriptionRegex,
    OutcomeStatus,
    RuleType,
    Transaction,
    actions_from_dict,
    conditions_from_dict,
)
from fintrack.db.repository import Repository
from fintrack.rules.actions import DEFAULT_NOTE_DELIMITER, apply_rule
from fintrack.rules.conditions import compile_pattern, evaluate

log = logging.getLogger("fintrack.rules")


@dataclass
class RuleEvaluation:
    """Result of running the rule set over one candidate transaction."""

    candidate: Transaction
    applied_rules: list[AppliedRule] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def rule_sort_key(rule: AutomationRule) -> tuple:
    """Order by priority (highest first), then creation time, then ID."""
    return (-rule.priority, rule.created_at, rule.id or "")


class RulesEngine:
    """Engine for matching transactions against automation rules."""

    def __init__(
        self,
        rules: list[AutomationRule],
        note_delimiter: str = DEFAULT_NOTE_DELIMITER,
    ):
        self._rules = sorted(rules, key=rule_sort_key)
        self._note_delimiter = note_delimiter
        self._compiled_patterns: dict[str, re.Pattern | None] = {}
        self._compile_patterns()

    def _compile_patterns(self) -> None:
        """Pre-compile regex patterns for performance."""
        for rule in self._rules:
            for condition in rule.conditions:
                if isinstance(condition, DescriptionRegex):
                    if condition.pattern not in self._compiled_patterns:
                        self._compiled_patterns[condition.pattern] = compile_pattern(
                            condition.pattern
                        )

    def select(self, candidate: Transaction, raw_text: str | None = None) -> list[AutomationRule]:
        """Find all active rules matching the unmodified candidate, in priority order."""
        return [
            rule
            for rule in self._rules
            if rule.is_active and evaluate(rule, candidate, raw_text, self._compiled_patterns)
        ]

    def apply(self, candidate: Transaction, raw_text: str | None = None) -> RuleEvaluation:
        """Apply every matching active rule in priority order.

        Each rule is evaluated against the candidate as rewritten by the
        rules before it, so an account set by one rule can enable a later
        rule keyed on that account.
        """
        current = candidate
        applied_rules = []
        warnings = []
        for rule in self._rules:
            if not rule.is_active:
                continue
            warnings.extend(self._pattern_warnings(rule))
            if not evaluate(rule, current, raw_text, self._compiled_patterns):
                continue
            current, applied = apply_rule(rule, current, self._note_delimiter)
            applied_rules.append(applied)
            log.debug(f"Rule {rule.name!r} applied to {candidate.description!r}")
            for outcome in applied.outcomes:
                if outcome.status != OutcomeStatus.APPLIED:
                    warnings.append(
                        f"{rule.name}: {outcome.action} {outcome.status.value}: {outcome.detail}"
                    )
        return RuleEvaluation(candidate=current, applied_rules=applied_rules, warnings=warnings)

    def _pattern_warnings(self, rule: AutomationRule) -> list[str]:
        """Describe invalid regex conditions of a rule."""
        return [
            f"{rule.name}: invalid description_regex {c.pattern!r} treated as non-matching"
            for c in rule.conditions
            if isinstance(c, DescriptionRegex) and self._compiled_patterns.get(c.pattern) is None
        ]

    def add_rule(self, rule: AutomationRule) -> None:
        """Add a rule to the engine."""
        self._rules.append(rule)
        self._rules.sort(key=rule_sort_key)
        self._compile_patterns()

    def remove_rule(self, rule_id: str) -> None:
        """Remove a rule from the engine."""
        self._rules = [r for r in self._rules if r.id != rule_id]

    def update_rules(self, rules: list[AutomationRule]) -> None:
        """Replace all rules with a new set."""
        self._rules = sorted(rules, key=rule_sort_key)
        self._compiled_patterns.clear()
        self._compile_patterns()

    @property
    def rules(self) -> list[AutomationRule]:
        """Get all rules in priority order."""
        return self._rules.copy()


async def apply_automation_rules(
    repo: Repository,
    candidate: Transaction,
    raw_text: str | None = None,
    note_delimiter: str = DEFAULT_NOTE_DELIMITER,
) -> RuleEvaluation:
    """Fetch the active rules and apply them to a candidate transaction.

    Automation fails open: if the rules cannot be loaded the candidate is
    returned unchanged with a warning.
    """
    try:
        rules = await repo.get_active_rules()
    except aiosqlite.Error as e:
        log.warning(f"Could not load automation rules: {e}")
        return RuleEvaluation(candidate=candidate, warnings=[f"Automation rules unavailable: {e}"])
    return RulesEngine(rules, note_delimiter).apply(candidate, raw_text)


def create_rule(
    name: str,
    conditions: dict,
    actions: dict,
    priority: int = 0,
    condition_logic: ConditionLogic = ConditionLogic.AND,
    rule_type: RuleType = RuleType.GENERAL,
    transfer_to_account_id: str | None = None,
) -> AutomationRule:
    """Helper to create a new rule from stored-shape conditions and actions."""
    return AutomationRule(
        id=None,
        name=name,
        conditions=conditions_from_dict(conditions),
        actions=actions_from_dict(actions),
        condition_logic=condition_logic,
        priority=priority,
        is_active=True,
        rule_type=rule_type,
        transfer_to_account_id=transfer_to_account_id,
        created_at=datetime.now(),
    )
