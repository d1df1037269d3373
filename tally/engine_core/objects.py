"""
Object State Machine - Ownership, activity and lifecycle of game objects.

An object ("variable") is a stateful game element: a token, a resource
pile, a card. Its definition lives in the template; its instances live
in the session, one shared instance or one per player.

State resolution order:
1. An explicit state on the instance always wins
2. No value -> inactive
3. Inactive ownership or closed active window -> inactive
4. Global ownership -> active
5. Resolved to a player -> owned
6. Otherwise owned if the instance belongs to a player, else active
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any
import logging
import time

from .context import EvaluationContext
from .expression import evaluate
from .resolvers import LIVE_STATES, build_expression_context
from .state import (
    AppState,
    GameTemplate,
    ObjectDefinition,
    ObjectValue,
    ObjectState,
    ObjectType,
    NUMERIC_OBJECT_TYPES,
    SetType,
    ScoreEntry,
    EntrySource,
    Ownership,
    GlobalOwnership,
    PlayerOwnership,
    InactiveOwnership,
    ObjectOwnership,
    AlwaysActive,
    RoundWindow,
    PhaseWindow,
    ObjectWindow,
    new_id,
)
from ..config import EPSILON

logger = logging.getLogger(__name__)

OWNERSHIP_GLOBAL = "global"
OWNERSHIP_INACTIVE = "inactive"


def evaluate_ownership(definition: ObjectDefinition, ctx: EvaluationContext) -> str | None:
    """
    Resolve who owns an object in this context.

    Returns a player id, "global", "inactive", or None when a player-owned
    object is evaluated without a player.
    """
    ownership = definition.effective_ownership

    if isinstance(ownership, InactiveOwnership):
        return OWNERSHIP_INACTIVE
    if isinstance(ownership, GlobalOwnership):
        return OWNERSHIP_GLOBAL
    if isinstance(ownership, PlayerOwnership):
        return ctx.player_id
    if isinstance(ownership, ObjectOwnership):
        ref = _referenced(definition, ownership.object_id, ctx)
        if ref is None:
            return OWNERSHIP_INACTIVE
        ref_definition, ref_instance = ref
        ref_state = evaluate_state(ref_definition, ref_instance, ctx.entering(definition.id))
        if ref_state in LIVE_STATES and ref_instance.player_id:
            return ref_instance.player_id
        return OWNERSHIP_INACTIVE
    return None


def evaluate_active_window(definition: ObjectDefinition, ctx: EvaluationContext) -> bool:
    """Whether the object's activity window is open in this context."""
    window = definition.effective_window

    if isinstance(window, AlwaysActive):
        return True

    if isinstance(window, RoundWindow):
        if window.round_id:
            return ctx.round_id == window.round_id
        if window.round_index is not None:
            rnd = ctx.state.find_round_by_index(ctx.session_id, window.round_index)
            return rnd is not None and rnd.id == ctx.round_id
        session = ctx.state.get_session(ctx.session_id)
        return bool(session and session.settings.rounds_enabled and ctx.round_id is not None)

    if isinstance(window, PhaseWindow):
        # Placeholder until phases exist: open iff the template enables a phase mechanic
        template = ctx.template
        return bool(template and template.has_enabled_mechanic("phase"))

    if isinstance(window, ObjectWindow):
        ref = _referenced(definition, window.object_id, ctx)
        if ref is None:
            return False
        ref_definition, ref_instance = ref
        return evaluate_state(ref_definition, ref_instance, ctx.entering(definition.id)) in LIVE_STATES

    return True


def evaluate_state(
    definition: ObjectDefinition,
    instance: ObjectValue,
    ctx: EvaluationContext,
) -> str:
    """Current lifecycle state of an object instance."""
    if instance.state:
        return instance.state

    if instance.value is None:
        return ObjectState.INACTIVE.value

    ownership = evaluate_ownership(definition, ctx)
    if ownership == OWNERSHIP_INACTIVE:
        return ObjectState.INACTIVE.value

    if not evaluate_active_window(definition, ctx):
        return ObjectState.INACTIVE.value

    if ownership == OWNERSHIP_GLOBAL:
        return ObjectState.ACTIVE.value
    if ownership:
        return ObjectState.OWNED.value

    return ObjectState.OWNED.value if instance.player_id else ObjectState.ACTIVE.value


def compute_value(
    definition: ObjectDefinition,
    instance: ObjectValue,
    ctx: EvaluationContext,
    totals: dict[str, float] | None = None,
) -> Any:
    """
    Value of an object, computed from its calculation formula if it has one.

    Falls back to the stored value when the formula fails.
    """
    if not definition.calculation:
        return instance.value

    try:
        if totals is None:
            totals = _category_totals(ctx)
        return evaluate(definition.calculation, build_expression_context(ctx, totals))
    except Exception as e:
        logger.warning(
            "Error computing object %s (formula: %r): %s",
            definition.name, definition.calculation, e,
        )
        return instance.value


def apply_score_impact(
    definition: ObjectDefinition,
    instance: ObjectValue,
    ctx: EvaluationContext,
    totals: dict[str, float] | None = None,
) -> float:
    """Score impact of a player-owned object. 0 without a formula, a player, or on error."""
    if not definition.score_impact or not instance.player_id or not ctx.player_id:
        return 0.0

    try:
        if totals is None:
            totals = _category_totals(ctx)
        return evaluate(definition.score_impact, build_expression_context(ctx, totals))
    except Exception as e:
        logger.warning(
            "Error applying score impact for object %s (formula: %r): %s",
            definition.name, definition.score_impact, e,
        )
        return 0.0


def get_object_state(
    state: AppState,
    session_id: str,
    definition_id: str,
    player_id: str | None = None,
    round_id: str | None = None,
) -> str:
    """State of the instance keyed by (definition, player), 'inactive' if missing."""
    template = state.get_template(session_id)
    definition = template.get_object_definition(definition_id) if template else None
    if definition is None:
        return ObjectState.INACTIVE.value
    instance = state.get_object_by_definition(session_id, definition_id, player_id)
    if instance is None:
        return ObjectState.INACTIVE.value
    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    return evaluate_state(definition, instance, ctx)


# =============================================================================
# Whole-session evaluation
# =============================================================================

@dataclass
class ObjectEvaluation:
    """Result of evaluating a session's objects. Nothing is written back."""
    updated_objects: list[ObjectValue] = field(default_factory=list)
    score_entries: list[ScoreEntry] = field(default_factory=list)


def evaluate_all_objects(
    state: AppState,
    session_id: str,
    round_id: str | None = None,
    now: float | None = None,
) -> ObjectEvaluation:
    """
    Re-evaluate every object instance of a session.

    Session-scoped instances are evaluated first, then each player's.
    Reports instances whose state or computed value changed, and the
    score-impact entries of active player objects.
    """
    result = ObjectEvaluation()
    session = state.get_session(session_id)
    template = state.get_template(session_id)
    if session is None or template is None:
        return result

    now = time.time() if now is None else now
    instances = state.session_objects(session_id)
    processed: set[str] = set()

    for player_id in [None, *session.player_ids]:
        ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
        totals_cache: dict[str, float] | None = None

        for instance in instances:
            if instance.player_id != player_id or instance.id in processed:
                continue
            processed.add(instance.id)

            definition = template.get_object_definition(instance.object_definition_id)
            if definition is None:
                continue

            if totals_cache is None and (definition.calculation or definition.score_impact):
                totals_cache = _category_totals(ctx)

            updated, entry = _evaluate_instance(
                definition, instance, ctx, now, totals_cache, with_impact=True,
            )
            if updated is not None:
                result.updated_objects.append(updated)
            if entry is not None:
                result.score_entries.append(entry)

    return result


def evaluate_object(
    state: AppState,
    session_id: str,
    object_value_id: str,
    round_id: str | None = None,
    now: float | None = None,
) -> ObjectValue | None:
    """Re-evaluate one instance. Returns the updated instance, or None if unchanged/unknown."""
    instance = state.object_values.get(object_value_id)
    template = state.get_template(session_id)
    if instance is None or template is None:
        return None
    definition = template.get_object_definition(instance.object_definition_id)
    if definition is None:
        return None

    ctx = EvaluationContext(
        state=state, session_id=session_id, player_id=instance.player_id, round_id=round_id,
    )
    now = time.time() if now is None else now
    updated, _ = _evaluate_instance(definition, instance, ctx, now, None, with_impact=False)
    return updated


def get_object_score_entries(
    state: AppState,
    session_id: str,
    player_id: str,
    round_id: str | None = None,
    now: float | None = None,
) -> list[ScoreEntry]:
    """Score-impact entries for one player's objects."""
    template = state.get_template(session_id)
    if template is None:
        return []

    now = time.time() if now is None else now
    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    entries: list[ScoreEntry] = []
    totals: dict[str, float] | None = None

    for instance in state.session_objects(session_id):
        if instance.player_id != player_id:
            continue
        definition = template.get_object_definition(instance.object_definition_id)
        if definition is None or not definition.score_impact:
            continue
        if not _is_live(definition, instance, ctx):
            continue
        if totals is None:
            totals = _category_totals(ctx)
        entry = _impact_entry(definition, instance, ctx, now, totals)
        if entry is not None:
            entries.append(entry)

    return entries


def _evaluate_instance(
    definition: ObjectDefinition,
    instance: ObjectValue,
    ctx: EvaluationContext,
    now: float,
    totals: dict[str, float] | None,
    with_impact: bool,
) -> tuple[ObjectValue | None, ScoreEntry | None]:
    new_state = evaluate_state(definition, instance, ctx)
    is_active = evaluate_active_window(definition, ctx)
    live = is_active and new_state in LIVE_STATES

    updated = instance
    if instance.state != new_state:
        updated = replace(updated, state=new_state)

    if definition.calculation and live:
        computed = compute_value(definition, instance, ctx, totals)
        if updated.computed_value != computed:
            updated = replace(updated, computed_value=computed, last_computed_at=now)

    entry = None
    if with_impact and definition.score_impact and live and ctx.player_id:
        entry = _impact_entry(definition, updated, ctx, now, totals)

    return (updated if updated is not instance else None), entry


def _impact_entry(
    definition: ObjectDefinition,
    instance: ObjectValue,
    ctx: EvaluationContext,
    now: float,
    totals: dict[str, float] | None,
) -> ScoreEntry | None:
    impact = apply_score_impact(definition, instance, ctx, totals)
    if abs(impact) <= EPSILON:
        return None
    return ScoreEntry(
        id=new_id(),
        session_id=ctx.session_id,
        player_id=ctx.player_id,
        value=impact,
        created_at=now,
        round_id=ctx.round_id,
        note=f"Auto: {definition.name} score impact",
        source=EntrySource.RULE_ENGINE,
    )


def _is_live(definition: ObjectDefinition, instance: ObjectValue, ctx: EvaluationContext) -> bool:
    return (
        evaluate_active_window(definition, ctx)
        and evaluate_state(definition, instance, ctx) in LIVE_STATES
    )


def _referenced(
    definition: ObjectDefinition,
    object_id: str,
    ctx: EvaluationContext,
) -> tuple[ObjectDefinition, ObjectValue] | None:
    """Referenced definition and its instance in this scope, or None."""
    template = ctx.template
    ref_definition = template.get_object_definition(object_id) if template else None
    if ref_definition is None:
        return None
    if ref_definition.id == definition.id or ref_definition.id in ctx.resolving:
        logger.warning(
            "Object %s references %s in a loop; treating it as inactive",
            definition.name, ref_definition.name,
        )
        return None
    ref_instance = ctx.state.get_object_by_definition(ctx.session_id, object_id, ctx.player_id)
    if ref_instance is None:
        return None
    return ref_definition, ref_instance


def _category_totals(ctx: EvaluationContext) -> dict[str, float]:
    """Player category totals for object formulas, computed without the object pass."""
    if ctx.player_id is None:
        return {}
    from .aggregation import run_pipeline

    return run_pipeline(
        ctx.state, ctx.session_id, ctx.player_id, ctx.round_id, evaluate_objects=False,
    ).totals


# =============================================================================
# Instances and filters
# =============================================================================

def default_value_for(definition: ObjectDefinition) -> Any:
    """Initial value of a fresh instance."""
    if definition.default_value is not None:
        return definition.default_value
    if definition.type in NUMERIC_OBJECT_TYPES:
        return 0
    if definition.type == ObjectType.BOOLEAN:
        return False
    if definition.type in (ObjectType.STRING, ObjectType.CUSTOM):
        return ""
    if definition.type == ObjectType.SET:
        return 0 if definition.set_type == SetType.IDENTICAL else []
    return 0


def initialize_objects(
    template: GameTemplate,
    session_id: str,
    player_ids: list[str],
    now: float | None = None,
) -> list[ObjectValue]:
    """
    Create the instances a new session needs.

    Global, inactive and object-referential ownership get one session
    instance (object-referential ones start inactive); player ownership
    gets one instance per player.
    """
    now = time.time() if now is None else now
    instances: list[ObjectValue] = []

    for definition in template.object_definitions:
        ownership = definition.effective_ownership
        if isinstance(ownership, PlayerOwnership):
            for player_id in player_ids:
                instances.append(ObjectValue(
                    id=f"{definition.id}-{player_id}",
                    session_id=session_id,
                    object_definition_id=definition.id,
                    player_id=player_id,
                    value=default_value_for(definition),
                    updated_at=now,
                ))
        else:
            instances.append(ObjectValue(
                id=f"{definition.id}-session-{session_id}",
                session_id=session_id,
                object_definition_id=definition.id,
                value=default_value_for(definition),
                updated_at=now,
                state=ObjectState.INACTIVE.value if isinstance(ownership, ObjectOwnership) else None,
            ))

    return instances


def get_objects_by_ownership(
    state: AppState,
    session_id: str,
    ownership: Ownership,
) -> list[ObjectValue]:
    """Instances whose definition has the given (effective) ownership."""
    template = state.get_template(session_id)
    if template is None:
        return []
    matches = []
    for instance in state.session_objects(session_id):
        definition = template.get_object_definition(instance.object_definition_id)
        if definition is not None and definition.effective_ownership == ownership:
            matches.append(instance)
    return matches


def get_active_objects(
    state: AppState,
    session_id: str,
    round_id: str | None = None,
    player_id: str | None = None,
) -> list[ObjectValue]:
    """Instances whose activity window is open."""
    template = state.get_template(session_id)
    if template is None:
        return []
    ctx = EvaluationContext(state=state, session_id=session_id, player_id=player_id, round_id=round_id)
    matches = []
    for instance in state.session_objects(session_id):
        definition = template.get_object_definition(instance.object_definition_id)
        if definition is not None and evaluate_active_window(definition, ctx):
            matches.append(instance)
    return matches
