"""
Resolvers - Wire game data into the formula engine.

Builds the ExpressionContext used by category formulas, object
calculations and score impacts for one player scope:
- {name} -> object value (player scope, then session scope) or category total
- {total} -> sum of all current category totals
- state(), owns(), round(), phase()
"""

from __future__ import annotations
from collections.abc import Mapping
from typing import Any, TYPE_CHECKING

from .expression import ExpressionContext
from .state import CategoryDefinition, ObjectDefinition, ObjectType, ObjectState, SetType, SetElementValue

if TYPE_CHECKING:
    from .context import EvaluationContext

TOTAL_REFERENCE = "total"
LIVE_STATES = (ObjectState.ACTIVE.value, ObjectState.OWNED.value)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def element_quantity(element: Any) -> float:
    """Quantity of one element-set entry, 0 when missing."""
    if isinstance(element, SetElementValue):
        quantity = element.quantity
    elif isinstance(element, Mapping):
        quantity = element.get("quantity")
    else:
        return 0.0
    return float(quantity) if is_number(quantity) else 0.0


def flatten_object_value(definition: ObjectDefinition, raw: Any) -> float | None:
    """
    Numeric view of an object value for formulas.

    Identical sets are their count, element sets the sum of element
    quantities. Non-numeric values have no numeric view (None).
    """
    if definition.type == ObjectType.SET:
        if definition.set_type == SetType.IDENTICAL:
            return float(raw) if is_number(raw) else 0.0
        if definition.set_type == SetType.ELEMENTS:
            if isinstance(raw, list):
                return sum(element_quantity(el) for el in raw)
            return 0.0
    if is_number(raw):
        return float(raw)
    return None


def resolve_object_number(ctx: EvaluationContext, name: str) -> float | None:
    """Numeric value of an object by name or id: player scope first, then session scope."""
    template = ctx.template
    if template is None:
        return None
    definition = template.find_object_definition(name)
    if definition is None:
        return None

    scopes = [ctx.player_id, None] if ctx.player_id is not None else [None]
    for player_id in scopes:
        raw = ctx.state.get_object_value(ctx.session_id, definition.id, player_id)
        if raw is None:
            continue
        number = flatten_object_value(definition, raw)
        if number is not None:
            return number
    return None


def resolve_category_total(
    categories: list[CategoryDefinition],
    totals: Mapping[str, float],
    name: str,
) -> float:
    """Category total by case-insensitive name or id. Unknown names are 0."""
    if name == TOTAL_REFERENCE:
        return float(sum(totals.values()))
    wanted = name.lower()
    for category in categories:
        if category.name.lower() == wanted or category.id == name:
            return float(totals.get(category.id, 0.0))
    return float(totals.get(name, 0.0))


def object_state_by_name(ctx: EvaluationContext, name: str) -> str:
    """Evaluated state of an object by name or id, 'inactive' when unknown."""
    from .objects import evaluate_state

    template = ctx.template
    definition = template.find_object_definition(name) if template else None
    if definition is None:
        return ObjectState.INACTIVE.value
    instance = ctx.state.get_object_by_definition(ctx.session_id, definition.id, ctx.player_id)
    if instance is None and ctx.player_id is not None:
        instance = ctx.state.get_object_by_definition(ctx.session_id, definition.id, None)
    if instance is None:
        return ObjectState.INACTIVE.value
    return evaluate_state(definition, instance, ctx)


def player_owns_object(ctx: EvaluationContext, name: str, player_id: str | None = None) -> bool:
    """
    Whether a player (default: the context player) owns an object.

    A player-scoped instance counts when active or owned; a session-scoped
    instance counts when its resolved owner is that player.
    """
    from .objects import evaluate_ownership, evaluate_state

    target = player_id or ctx.player_id
    template = ctx.template
    if target is None or template is None:
        return False
    definition = template.find_object_definition(name)
    if definition is None:
        return False

    target_ctx = ctx.for_player(target)
    instance = ctx.state.get_object_by_definition(ctx.session_id, definition.id, target)
    if instance is not None:
        return evaluate_state(definition, instance, target_ctx) in LIVE_STATES

    shared = ctx.state.get_object_by_definition(ctx.session_id, definition.id, None)
    if shared is None:
        return False
    return evaluate_ownership(definition, target_ctx) == target


def build_expression_context(
    ctx: EvaluationContext,
    totals: Mapping[str, float],
) -> ExpressionContext:
    """
    ExpressionContext for one player scope.

    totals is read live, so a caller updating it between evaluations
    (the formula pass does) is seen by later formulas.
    """
    categories = ctx.state.session_categories(ctx.session_id)
    return ExpressionContext(
        resolve_category=lambda name: resolve_category_total(categories, totals, name),
        resolve_object=lambda name: resolve_object_number(ctx, name),
        get_object_state=lambda name: object_state_by_name(ctx, name),
        owns_object=lambda name, player_id=None: player_owns_object(ctx, name, player_id),
        get_round_index=lambda: ctx.round_index,
        # no phase engine yet
        get_phase_id=lambda: None,
    )
