"""Application of automation rule actions to candidate transactions."""

import logging
import uuid
from dataclasses import replace
from datetime import datetime

from fintrack.db.models import (
    Action,
    ActionOutcome,
    AddNote,
    AppliedRule,
    AutomationRule,
    AutoReconcile,
    LinkToAccount,
    OutcomeStatus,
    SetAccount,
    SetCategory,
    SetType,
    Transaction,
    TransactionType,
    actions_to_dict,
)

DEFAULT_NOTE_DELIMITER = " | "

log = logging.getLogger("fintrack.rules")


def action_name(action: Action) -> str:
    """Get the stored key of an action, e.g. ``set_type``."""
    return next(iter(actions_to_dict([action])))


def apply_rule(
    rule: AutomationRule,
    candidate: Transaction,
    note_delimiter: str = DEFAULT_NOTE_DELIMITER,
) -> tuple[Transaction, AppliedRule]:
    """Apply every action of a matched rule to a copy of the candidate.

    Actions that would leave the transaction inconsistent, or that refer
    to nothing, are skipped and recorded in the outcome list; they never
    stop the remaining actions. The returned candidate carries the new
    AppliedRule at the end of its ``applied_rules``.
    """
    current = replace(candidate, applied_rules=list(candidate.applied_rules))
    outcomes = []
    for action in rule.actions:
        name = action_name(action)
        try:
            current = apply_action(action, current, rule, note_delimiter)
        except RuleConflictError as e:
            log.warning(f"Rule {rule.name!r}: skipped {name} ({e})")
            outcomes.append(ActionOutcome(name, OutcomeStatus.SKIPPED_CONFLICT, str(e)))
        except RuleValidationError as e:
            log.warning(f"Rule {rule.name!r}: skipped invalid {name} ({e})")
            outcomes.append(ActionOutcome(name, OutcomeStatus.SKIPPED_INVALID, str(e)))
        else:
            outcomes.append(ActionOutcome(name, OutcomeStatus.APPLIED))
    applied = AppliedRule(
        rule_id=rule.id,
        rule_name=rule.name,
        actions=actions_to_dict(rule.actions),
        outcomes=outcomes,
    )
    current.applied_rules.append(applied)
    return current, applied


def apply_action(
    action: Action,
    candidate: Transaction,
    rule: AutomationRule,
    note_delimiter: str = DEFAULT_NOTE_DELIMITER,
) -> Transaction:
    """Return a copy of the candidate with one action applied.

    Raises RuleConflictError or RuleValidationError instead of producing
    an inconsistent transfer state.
    """
    if isinstance(action, SetType):
        return _set_type(action.type, candidate, rule)
    if isinstance(action, SetCategory):
        return replace(candidate, category_id=action.category_id)
    if isinstance(action, SetAccount):
        return _set_account(action.account_id, candidate)
    if isinstance(action, LinkToAccount):
        return _link_to_account(action.account_id, candidate)
    if isinstance(action, AutoReconcile):
        if not action.enabled:
            return replace(candidate, is_reconciled=False, reconciled_at=None)
        return replace(
            candidate,
            is_reconciled=True,
            reconciled_at=candidate.reconciled_at or datetime.now(),
        )
    if isinstance(action, AddNote):
        notes = f"{candidate.notes}{note_delimiter}{action.note}" if candidate.notes else action.note
        return replace(candidate, notes=notes)
    raise TypeError(f"Unknown action type: {type(action).__name__}")


def _set_type(
    target: TransactionType, candidate: Transaction, rule: AutomationRule
) -> Transaction:
    """Change the type without breaking transfer pairing."""
    if target == candidate.type:
        return candidate
    if candidate.type == TransactionType.TRANSFER and candidate.transfer_to_account_id:
        raise RuleConflictError(
            f"transfer linked to {candidate.transfer_to_account_id} cannot become {target.value}"
        )
    if target != TransactionType.TRANSFER:
        return replace(candidate, type=target, transfer_to_account_id=None, transfer_id=None)
    destination = candidate.transfer_to_account_id or rule.transfer_to_account_id
    if not destination:
        raise RuleConflictError("transfer needs a destination account")
    if destination == candidate.account_id:
        raise RuleConflictError(f"transfer destination {destination} is the source account")
    return replace(
        candidate,
        type=target,
        transfer_to_account_id=destination,
        transfer_id=candidate.transfer_id or str(uuid.uuid4()),
    )


def _set_account(account_id: str, candidate: Transaction) -> Transaction:
    if not account_id:
        raise RuleValidationError("set_account has no account")
    if (
        candidate.type == TransactionType.TRANSFER
        and candidate.transfer_to_account_id == account_id
    ):
        raise RuleConflictError(f"account {account_id} is already the transfer destination")
    return replace(candidate, account_id=account_id)


def _link_to_account(account_id: str, candidate: Transaction) -> Transaction:
    if not account_id:
        raise RuleValidationError("link_to_account has no account")
    if account_id == candidate.account_id:
        raise RuleConflictError(f"cannot link account {account_id} to itself")
    return replace(
        candidate,
        type=TransactionType.TRANSFER,
        transfer_to_account_id=account_id,
        transfer_id=candidate.transfer_id or str(uuid.uuid4()),
    )


class RuleValidationError(Exception):
    """Exception raised when a rule action refers to nothing usable."""


class RuleConflictError(Exception):
    """Exception raised when a rule action would break transfer consistency."""
