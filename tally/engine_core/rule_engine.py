"""
Rule Engine - Turns aggregated totals into new ledger entries.

Stateless: evaluate_rules reads a snapshot and returns candidate entries.
Actions never rewrite history. multiply and set are expressed as
compensating deltas against the current target total, so appending the
entry yields the desired total.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
import time

from .aggregation import compute_category_totals
from .context import EvaluationContext
from .resolvers import resolve_object_number
from .state import (
    AppState,
    ConditionType,
    EntrySource,
    GameTemplate,
    RuleActionType,
    RuleCondition,
    RuleTemplate,
    ScoreEntry,
    ScoringRule,
    new_id,
)
from ..config import EPSILON

logger = logging.getLogger(__name__)


def compare(left: float, operator: str, right: float) -> bool:
    """Apply a comparison operator. Equality is epsilon based."""
    if operator == ">=":
        return left >= right
    if operator == "<=":
        return left <= right
    if operator == "==":
        return abs(left - right) < EPSILON
    if operator == "!=":
        return abs(left - right) >= EPSILON
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    return False


def _condition_value(condition: RuleCondition, ctx: EvaluationContext) -> float | None:
    """Left-hand side of a condition, None when it cannot be resolved."""
    if condition.type == ConditionType.TOTAL:
        totals = compute_category_totals(ctx.state, ctx.session_id, ctx.player_id, ctx.round_id)
        return float(sum(totals.values()))

    if condition.type == ConditionType.CATEGORY:
        if not condition.category_id:
            return None
        totals = compute_category_totals(ctx.state, ctx.session_id, ctx.player_id, ctx.round_id)
        if condition.category_id in totals:
            return totals[condition.category_id]
        # not a category with a total: maybe an object
        return resolve_object_number(ctx, condition.category_id)

    if condition.type == ConditionType.ROUND:
        return float(sum(
            1 for e in ctx.state.session_entries(ctx.session_id)
            if e.player_id == ctx.player_id and e.round_id == condition.round_id
        ))

    return None


def evaluate_condition(condition: RuleCondition, ctx: EvaluationContext) -> bool:
    left = _condition_value(condition, ctx)
    if left is None:
        return False
    return compare(left, condition.operator, condition.value)


def apply_rule_action(
    rule: ScoringRule,
    ctx: EvaluationContext,
    now: float | None = None,
) -> ScoreEntry | None:
    """
    Build the entry a triggered rule adds.

    Returns None when the delta is below epsilon.
    """
    totals = compute_category_totals(ctx.state, ctx.session_id, ctx.player_id, ctx.round_id)
    target_id = rule.action.target_category_id
    target = totals.get(target_id, 0.0) if target_id else float(sum(totals.values()))

    action = rule.action
    if action.type == RuleActionType.ADD:
        delta = action.value
    elif action.type == RuleActionType.MULTIPLY:
        delta = target * action.value - target
    elif action.type == RuleActionType.SET:
        delta = action.value - target
    else:
        return None

    if abs(delta) < EPSILON:
        return None

    return ScoreEntry(
        id=new_id(),
        session_id=ctx.session_id,
        player_id=ctx.player_id,
        value=delta,
        created_at=time.time() if now is None else now,
        category_id=target_id,
        round_id=ctx.round_id,
        note=f"Auto: {rule.name}",
        source=EntrySource.RULE_ENGINE,
    )


def _matches_template(rule: ScoringRule, rule_template: RuleTemplate) -> bool:
    """Structural match for session rules copied before template ids were kept."""
    return (
        rule_template.condition == rule.condition
        and rule_template.action == rule.action
    )


def active_rules(state: AppState, session_id: str) -> list[ScoringRule]:
    """
    Session rules that may fire.

    A rule must be enabled and still backed by an enabled rule in the
    session's template; rules removed from the template stop firing even
    if a copy is still attached to the session.
    """
    template: GameTemplate | None = state.get_template(session_id)
    if template is None or not template.rule_templates:
        return []

    enabled_templates = [rt for rt in template.rule_templates if rt.enabled]
    enabled_ids = {rt.id for rt in enabled_templates}

    rules = []
    for rule in state.session_rules(session_id):
        if not rule.enabled:
            continue
        if rule.template_rule_id is not None:
            if rule.template_rule_id in enabled_ids:
                rules.append(rule)
        elif any(_matches_template(rule, rt) for rt in enabled_templates):
            rules.append(rule)
    return rules


def evaluate_rules(
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
    now: float | None = None,
) -> list[ScoreEntry]:
    """
    Evaluate all active rules for one player.

    A rule that raises is logged and skipped; the others still run.
    """
    if state.get_session(session_id) is None:
        return []

    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    entries: list[ScoreEntry] = []

    for rule in active_rules(state, session_id):
        try:
            met = evaluate_condition(rule.condition, ctx)
            logger.debug("Rule %r: condition met=%s for player %s", rule.name, met, player_id)
            if not met:
                continue
            entry = apply_rule_action(rule, ctx, now)
            if entry is not None:
                logger.debug("Rule %r creating entry: player=%s value=%s", rule.name, player_id, entry.value)
                entries.append(entry)
        except Exception as e:
            logger.warning("Error evaluating rule %s: %s", rule.name, e)

    return entries


@dataclass
class RuleTestResult:
    would_trigger: bool
    entry: ScoreEntry | None = None


def test_rule(
    rule: ScoringRule,
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
    now: float | None = None,
) -> RuleTestResult:
    """Dry run of one rule, ignoring enabled flags and template membership."""
    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    try:
        would_trigger = evaluate_condition(rule.condition, ctx)
        entry = apply_rule_action(rule, ctx, now) if would_trigger else None
        return RuleTestResult(would_trigger=would_trigger, entry=entry)
    except Exception as e:
        logger.debug("Rule test for %s failed: %s", rule.name, e)
        return RuleTestResult(would_trigger=False)


# keep pytest from collecting the function when tests import it
test_rule.__test__ = False
