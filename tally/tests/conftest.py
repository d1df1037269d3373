"""
Pytest fixtures for Tally tests.

The module-level builders are importable by tests that need to assemble
their own snapshot; the fixtures cover the common layouts.
"""

from dataclasses import replace
import pytest

from ..engine_core.objects import initialize_objects
from ..engine_core.state import (
    AppState,
    CategoryDefinition,
    ConditionType,
    DisplayType,
    EntrySource,
    GameMechanic,
    GameTemplate,
    ObjectDefinition,
    ObjectValue,
    Round,
    RuleAction,
    RuleActionType,
    RuleCondition,
    RuleTemplate,
    ScoreDirection,
    ScoreEntry,
    ScoringRule,
    Session,
    SessionSettings,
    new_id,
)

SESSION = "s1"
TEMPLATE = "t1"
PLAYERS = ("p1", "p2")
NOW = 1_000_000.0


def make_entry(
    player_id: str,
    value: float,
    category_id: str | None = None,
    round_id: str | None = None,
    created_at: float = NOW,
    source: EntrySource = EntrySource.MANUAL,
    note: str | None = None,
) -> ScoreEntry:
    return ScoreEntry(
        id=new_id(),
        session_id=SESSION,
        player_id=player_id,
        value=value,
        created_at=created_at,
        category_id=category_id,
        round_id=round_id,
        note=note,
        source=source,
    )


def make_category(
    category_id: str,
    parent: str | None = None,
    display: DisplayType = DisplayType.SUM,
    formula: str | None = None,
    weight: float | None = None,
    name: str | None = None,
) -> CategoryDefinition:
    return CategoryDefinition(
        id=category_id,
        session_id=SESSION,
        name=name or category_id.capitalize(),
        display_type=display,
        parent_category_id=parent,
        formula=formula,
        weight=weight,
    )


def make_rule(
    rule_id: str,
    name: str,
    condition: RuleCondition,
    action: RuleAction,
    linked: bool = True,
) -> tuple[ScoringRule, RuleTemplate]:
    """A session rule and the template rule it was copied from."""
    rule_template = RuleTemplate(id=f"rt-{rule_id}", name=name, condition=condition, action=action)
    rule = ScoringRule(
        id=rule_id,
        session_id=SESSION,
        name=name,
        condition=condition,
        action=action,
        template_rule_id=rule_template.id if linked else None,
    )
    return rule, rule_template


def total_bonus_rule(threshold: float = 10, bonus: float = 5) -> tuple[ScoringRule, RuleTemplate]:
    """total >= threshold -> add bonus."""
    return make_rule(
        "bonus",
        "Bonus",
        RuleCondition(type=ConditionType.TOTAL, operator=">=", value=threshold),
        RuleAction(type=RuleActionType.ADD, value=bonus),
    )


def build_state(
    categories=(),
    entries=(),
    object_definitions=(),
    object_values=None,
    rules=(),
    rule_templates=(),
    mechanics=(),
    players=PLAYERS,
    rounds_enabled: bool = False,
    score_direction: ScoreDirection = ScoreDirection.HIGHER_WINS,
) -> AppState:
    """
    Assemble a one-session snapshot.

    Object instances default to what initialize_objects creates.
    Rounds r1 (index 1) and r2 (index 2) always exist.
    """
    template = GameTemplate(
        id=TEMPLATE,
        name="Test Game",
        object_definitions=list(object_definitions),
        rule_templates=list(rule_templates),
        mechanics=list(mechanics),
    )
    if object_values is None:
        object_values = initialize_objects(template, SESSION, list(players), now=NOW)

    rounds = {
        "r1": Round(id="r1", session_id=SESSION, index=1, label="Round 1"),
        "r2": Round(id="r2", session_id=SESSION, index=2, label="Round 2"),
    }
    session = Session(
        id=SESSION,
        title="Test Session",
        player_ids=list(players),
        round_ids=list(rounds),
        rule_ids=[r.id for r in rules],
        object_value_ids=[v.id for v in object_values],
        template_id=TEMPLATE,
        settings=SessionSettings(rounds_enabled=rounds_enabled, score_direction=score_direction),
    )
    return AppState(
        sessions={SESSION: session},
        categories={c.id: c for c in categories},
        rounds=rounds,
        entries={e.id: e for e in entries},
        rules={r.id: r for r in rules},
        templates={TEMPLATE: template},
        object_values={v.id: v for v in object_values},
    )


def set_object(state: AppState, definition_id: str, player_id: str | None = None, /, **changes) -> AppState:
    """Return state with one object instance changed."""
    instance = state.get_object_by_definition(SESSION, definition_id, player_id)
    assert instance is not None, f"no instance of {definition_id} for {player_id}"
    return state.with_object_values([replace(instance, **changes)])


def add_instance(state: AppState, definition_id: str, player_id: str | None, value, /, **fields) -> AppState:
    """Return state with an extra object instance."""
    suffix = player_id or f"session-{SESSION}"
    instance = ObjectValue(
        id=f"{definition_id}-{suffix}",
        session_id=SESSION,
        object_definition_id=definition_id,
        player_id=player_id,
        value=value,
        updated_at=NOW,
        **fields,
    )
    return state.with_object_values([instance])


def persisted_snapshot() -> dict:
    """
    A state snapshot as the app's store serializes it (camelCase keys).

    p1 has 4 in Houses; the Bonus rule adds 5 once a total reaches 10.
    """
    bonus_condition = {"type": "total", "operator": ">=", "value": 10}
    bonus_action = {"type": "add", "value": 5}
    return {
        "sessions": {
            SESSION: {
                "id": SESSION,
                "title": "Game night",
                "createdAt": 1700000000000,
                "playerIds": list(PLAYERS),
                "roundIds": ["r1"],
                "ruleIds": ["bonus"],
                "objectValueIds": ["gold-p1", "gold-p2", "gems-session"],
                "templateId": TEMPLATE,
                "settings": {"roundsEnabled": True, "scoreDirection": "higherWins", "allowNegative": True},
            },
        },
        "categories": {
            "houses": {"id": "houses", "sessionId": SESSION, "name": "Houses", "sortOrder": 0},
        },
        "rounds": {
            "r1": {"id": "r1", "sessionId": SESSION, "index": 1, "label": "Round 1"},
        },
        "entries": {
            "e1": {
                "id": "e1",
                "sessionId": SESSION,
                "playerId": "p1",
                "createdAt": 1000.0,
                "value": 4,
                "categoryId": "houses",
                "source": "manual",
            },
        },
        "rules": {
            "bonus": {
                "id": "bonus",
                "sessionId": SESSION,
                "name": "Bonus",
                "condition": bonus_condition,
                "action": bonus_action,
                "enabled": True,
                "templateRuleId": "rt-bonus",
            },
        },
        "templates": {
            TEMPLATE: {
                "id": TEMPLATE,
                "name": "Test Game",
                "ruleTemplates": [
                    {"id": "rt-bonus", "name": "Bonus", "condition": bonus_condition, "action": bonus_action},
                ],
                "objectDefinitions": [
                    {
                        "id": "gold",
                        "name": "Gold",
                        "type": "number",
                        "ownership": "player",
                        "activeWindow": "always",
                        "calculation": None,
                        "scoreImpact": "{gold}",
                    },
                    {
                        "id": "gems",
                        "name": "Gems",
                        "type": "set",
                        "setType": "elements",
                        "setElements": ["ruby"],
                        "ownership": {"type": "object", "objectId": "gold"},
                        "activeWindow": {"type": "round", "roundIndex": 1},
                    },
                ],
                "mechanics": [{"id": "m1", "type": "phase", "name": "Phases", "enabled": True}],
            },
        },
        "objectValues": {
            "gold-p1": {
                "id": "gold-p1", "sessionId": SESSION, "objectDefinitionId": "gold",
                "playerId": "p1", "value": 2, "updatedAt": 1000.0, "updatedBy": "manual",
            },
            "gold-p2": {
                "id": "gold-p2", "sessionId": SESSION, "objectDefinitionId": "gold",
                "playerId": "p2", "value": 0, "updatedAt": 1000.0, "updatedBy": "manual",
            },
            "gems-session": {
                "id": "gems-session", "sessionId": SESSION, "objectDefinitionId": "gems",
                "value": [{"elementObjectDefinitionId": "ruby", "quantity": 2}],
                "updatedAt": 1000.0, "updatedBy": "manual", "state": "inactive",
            },
        },
    }


@pytest.fixture
def nested_state() -> AppState:
    """Buildings <- Houses, Towers with entries Houses=3, Towers=4 for p1."""
    return build_state(
        categories=[
            make_category("buildings"),
            make_category("houses", parent="buildings"),
            make_category("towers", parent="buildings"),
        ],
        entries=[
            make_entry("p1", 1, "houses"),
            make_entry("p1", 2, "houses"),
            make_entry("p1", 4, "towers"),
            make_entry("p2", 5, "houses"),
        ],
    )


@pytest.fixture
def gold_definition() -> ObjectDefinition:
    """Player-owned number whose value is also its score impact."""
    return ObjectDefinition(id="gold", name="Gold", score_impact="{gold}")


@pytest.fixture
def gold_state(gold_definition) -> AppState:
    """p1 holds 3 gold, p2 none."""
    state = build_state(object_definitions=[gold_definition])
    return set_object(state, "gold", "p1", value=3)


@pytest.fixture
def bonus_state() -> AppState:
    """'total >= 10 -> add 5' attached and backed by the template."""
    rule, rule_template = total_bonus_rule()
    return build_state(
        categories=[make_category("houses")],
        rules=[rule],
        rule_templates=[rule_template],
    )


@pytest.fixture
def phase_mechanic() -> GameMechanic:
    return GameMechanic(id="m1", type="phase", name="Phases")
