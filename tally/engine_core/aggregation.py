"""
Aggregation Pipeline - Turns a player's ledger into category totals.

Passes run in a fixed order; each one sees the previous pass's output:
1. Object pass: re-evaluate session objects (side channel, see below)
2. Base totals: sum the player's entries per category
3. Nested rollup: parents become the sum of their children
4. Formula pass: formula categories are re-evaluated against the totals
5. Weighting pass: weighted categories are scaled

Score-impact entries produced by the object pass are returned next to the
totals but are not part of them. They count once the caller has appended
them to the ledger, i.e. on the next evaluation cycle.
"""

from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass
import logging
import math

from .context import EvaluationContext
from .expression import evaluate
from .objects import ObjectEvaluation, evaluate_all_objects
from .resolvers import build_expression_context
from .state import AppState, CategoryDefinition, DisplayType, ScoreDirection

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


@dataclass
class AggregationResult:
    """Final totals plus the object pass side channel (None when skipped)."""
    totals: dict[str, float]
    objects: ObjectEvaluation | None = None


def compute_base_totals(state: AppState, session_id: str, player_id: str) -> dict[str, float]:
    """Sum the player's entries per category id. Entries without one go to 'uncategorized'."""
    totals: dict[str, float] = {}
    for entry in state.session_entries(session_id):
        if entry.player_id != player_id:
            continue
        key = entry.category_id or UNCATEGORIZED
        totals[key] = totals.get(key, 0.0) + entry.value
    return totals


def _cycle_members(by_id: Mapping[str, CategoryDefinition]) -> set[str]:
    """Categories whose parent chain leads back to themselves."""
    members: set[str] = set()
    for category_id, category in by_id.items():
        seen: set[str] = set()
        parent_id = category.parent_category_id
        while parent_id and parent_id not in seen:
            if parent_id == category_id:
                members.add(category_id)
                break
            seen.add(parent_id)
            parent = by_id.get(parent_id)
            parent_id = parent.parent_category_id if parent else None
    return members


def compute_nested_totals(
    categories: list[CategoryDefinition],
    base_totals: Mapping[str, float],
) -> dict[str, float]:
    """
    Roll children up into their parents.

    Only ancestors of categories that have a total are populated; a parent's
    total is the sum of its children's totals. Leaves keep their base value,
    and so does every category caught in a parent cycle.
    """
    result = dict(base_totals)
    by_id = {c.id: c for c in categories}
    children: dict[str, list[str]] = {}
    for category in categories:
        if category.parent_category_id:
            children.setdefault(category.parent_category_id, []).append(category.id)

    in_cycle = _cycle_members(by_id)
    for category_id in sorted(in_cycle):
        logger.warning("Category cycle through %s; keeping its own entries", category_id)

    computed: set[str] = set()

    def total_of(category_id: str) -> float:
        if category_id in computed:
            return result.get(category_id, 0.0)
        computed.add(category_id)
        kids = children.get(category_id, [])
        if not kids or category_id in in_cycle:
            return result.get(category_id, 0.0)

        total = sum(total_of(kid) for kid in kids)
        result[category_id] = total
        return total

    for category_id in list(base_totals):
        category = by_id.get(category_id)
        seen: set[str] = set()
        while category is not None and category.parent_category_id:
            parent_id = category.parent_category_id
            if parent_id in seen:
                break
            seen.add(parent_id)
            total_of(parent_id)
            category = by_id.get(parent_id)

    return result


def _is_numeric_literal(formula: str) -> bool:
    try:
        return math.isfinite(float(formula.strip()))
    except ValueError:
        return False


def apply_formulas(
    ctx: EvaluationContext,
    categories: list[CategoryDefinition],
    totals: Mapping[str, float],
) -> dict[str, float]:
    """
    Re-evaluate formula categories that already have a total.

    A failing formula keeps the pre-formula total. A formula that is a bare
    number is a quick-add amount, so the summed total is kept.
    """
    result = dict(totals)
    expression_context = build_expression_context(ctx, result)

    for category in categories:
        if category.display_type != DisplayType.FORMULA or not category.formula:
            continue
        if category.id not in result:
            continue
        if _is_numeric_literal(category.formula):
            continue
        try:
            result[category.id] = evaluate(category.formula, expression_context)
        except Exception as e:
            logger.warning(
                "Formula error for category %s (formula: %r): %s",
                category.name, category.formula, e,
            )

    return result


def apply_weights(
    categories: list[CategoryDefinition],
    totals: Mapping[str, float],
) -> dict[str, float]:
    """Scale weighted categories. Totals without a definition pass through."""
    by_id = {c.id: c for c in categories}
    result: dict[str, float] = {}
    for category_id, total in totals.items():
        category = by_id.get(category_id)
        if category is not None and category.display_type == DisplayType.WEIGHTED:
            weight = 1.0 if category.weight is None else category.weight
            total = total * weight
        result[category_id] = total
    return result


def run_pipeline(
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
    evaluate_objects: bool = True,
) -> AggregationResult:
    """
    Run every pass for one player.

    evaluate_objects=False skips the object pass; object formulas use it so
    that computing an object never re-enters object computation.
    """
    objects = evaluate_all_objects(state, session_id, round_id) if evaluate_objects else None

    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    categories = state.session_categories(session_id)

    totals = compute_base_totals(state, session_id, player_id)
    totals = compute_nested_totals(categories, totals)
    totals = apply_formulas(ctx, categories, totals)
    totals = apply_weights(categories, totals)

    return AggregationResult(totals=totals, objects=objects)


def compute_category_totals(
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
) -> dict[str, float]:
    """Final category totals for one player, keyed by category id."""
    return run_pipeline(state, session_id, player_id, round_id).totals


def compute_player_total(
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
) -> float:
    """Sum of all final category totals."""
    return float(sum(compute_category_totals(state, session_id, player_id, round_id).values()))


def compute_all_player_totals(
    state: AppState,
    session_id: str,
    round_id: str | None = None,
) -> dict[str, float]:
    session = state.get_session(session_id)
    if session is None:
        return {}
    return {
        player_id: compute_player_total(state, session_id, player_id, round_id)
        for player_id in session.player_ids
    }


def find_winners(
    totals: Mapping[str, float],
    direction: ScoreDirection | str = ScoreDirection.HIGHER_WINS,
) -> list[str]:
    """Every player sharing the best total. Ties are all included."""
    if not totals:
        return []
    direction = ScoreDirection(direction)
    values = totals.values()
    target = max(values) if direction == ScoreDirection.HIGHER_WINS else min(values)
    return [player_id for player_id, total in totals.items() if total == target]


def format_category_name(
    categories: Mapping[str, CategoryDefinition],
    category_id: str | None,
) -> str:
    if not category_id:
        return "Uncategorized"
    category = categories.get(category_id)
    return category.name if category else "(deleted)"
