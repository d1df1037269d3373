"""
Tests for the rule engine.

Tests:
- Conditions (total, category, object-valued, round count)
- Actions as compensating deltas
- Which session rules are active
- Error isolation and dry runs
"""

from dataclasses import replace
import logging

import pytest

from ..engine_core import rule_engine
from ..engine_core.aggregation import compute_player_total
from ..engine_core.rule_engine import active_rules, compare, evaluate_rules, test_rule as dry_run
from ..engine_core.state import (
    ConditionType,
    EntrySource,
    RuleAction,
    RuleActionType,
    RuleCondition,
)
from .conftest import NOW, SESSION, build_state, make_category, make_entry, make_rule, set_object


def with_houses(state, *values, player_id="p1"):
    return state.with_entries([make_entry(player_id, v, "houses") for v in values])


def single_rule_state(condition, action, entries=(), linked=True, **kwargs):
    rule, rule_template = make_rule("r", "Rule", condition, action, linked=linked)
    return build_state(
        categories=[make_category("houses")],
        entries=entries,
        rules=[rule],
        rule_templates=[rule_template],
        **kwargs,
    )


class TestCompare:
    """Tests for compare()."""

    @pytest.mark.parametrize("left, op, right, expected", [
        (10, ">=", 10, True),
        (9, ">=", 10, False),
        (3, "<=", 3, True),
        (4, ">", 3, True),
        (3, "<", 3, False),
        (0.1 + 0.2, "==", 0.3, True),
        (0.1 + 0.2, "!=", 0.3, False),
        (1, "!=", 2, True),
        (1, "=>", 1, False),
    ])
    def test_operators(self, left, op, right, expected):
        assert compare(left, op, right) is expected


class TestTotalRule:
    """The classic 'total >= 10 -> add 5' rule."""

    def test_below_threshold(self, bonus_state):
        state = with_houses(bonus_state, 4, 5)
        assert evaluate_rules(state, SESSION, "p1", now=NOW) == []

    def test_at_threshold(self, bonus_state):
        state = with_houses(bonus_state, 4, 6)
        entries = evaluate_rules(state, SESSION, "p1", now=NOW)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.value == 5
        assert entry.player_id == "p1"
        assert entry.source == EntrySource.RULE_ENGINE
        assert entry.note == "Auto: Bonus"
        assert entry.category_id is None
        assert entry.created_at == NOW

    def test_other_player_unaffected(self, bonus_state):
        state = with_houses(bonus_state, 10)
        assert evaluate_rules(state, SESSION, "p2", now=NOW) == []

    def test_round_carried_to_entry(self, bonus_state):
        state = with_houses(bonus_state, 10)
        entries = evaluate_rules(state, SESSION, "p1", round_id="r2", now=NOW)
        assert entries[0].round_id == "r2"

    def test_total_after_append(self, bonus_state):
        state = with_houses(bonus_state, 10)
        state = state.with_entries(evaluate_rules(state, SESSION, "p1", now=NOW))
        assert compute_player_total(state, SESSION, "p1") == 15

    def test_unknown_session(self, bonus_state):
        assert evaluate_rules(bonus_state, "nope", "p1") == []


class TestActions:
    """Tests for multiply and set expressed as deltas."""

    def test_multiply_target(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.TOTAL, operator=">=", value=1),
            RuleAction(type=RuleActionType.MULTIPLY, value=2, target_category_id="houses"),
            entries=[make_entry("p1", 4, "houses")],
        )
        entries = evaluate_rules(state, SESSION, "p1", now=NOW)
        assert [(e.value, e.category_id) for e in entries] == [(4, "houses")]

    def test_multiply_total(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.TOTAL, operator=">", value=0),
            RuleAction(type=RuleActionType.MULTIPLY, value=0.5),
            entries=[make_entry("p1", 8, "houses")],
        )
        assert [e.value for e in evaluate_rules(state, SESSION, "p1", now=NOW)] == [-4]

    def test_set_target(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.TOTAL, operator=">=", value=0),
            RuleAction(type=RuleActionType.SET, value=10, target_category_id="houses"),
            entries=[make_entry("p1", 4, "houses")],
        )
        entries = evaluate_rules(state, SESSION, "p1", now=NOW)
        assert [e.value for e in entries] == [6]

        state = state.with_entries(entries)
        assert evaluate_rules(state, SESSION, "p1", now=NOW) == []

    def test_zero_add_produces_nothing(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.TOTAL, operator=">=", value=0),
            RuleAction(type=RuleActionType.ADD, value=0),
        )
        assert evaluate_rules(state, SESSION, "p1", now=NOW) == []


class TestConditions:
    """Tests for category, object and round conditions."""

    def test_category_condition(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.CATEGORY, operator=">=", value=3, category_id="houses"),
            RuleAction(type=RuleActionType.ADD, value=1),
            entries=[make_entry("p1", 3, "houses"), make_entry("p2", 2, "houses")],
        )
        assert len(evaluate_rules(state, SESSION, "p1", now=NOW)) == 1
        assert evaluate_rules(state, SESSION, "p2", now=NOW) == []

    def test_object_valued_condition(self, gold_definition):
        state = single_rule_state(
            RuleCondition(type=ConditionType.CATEGORY, operator=">=", value=3, category_id="gold"),
            RuleAction(type=RuleActionType.ADD, value=2),
            object_definitions=[gold_definition],
        )
        state = set_object(state, "gold", "p1", value=3)
        assert [e.value for e in evaluate_rules(state, SESSION, "p1", now=NOW)] == [2]
        assert evaluate_rules(state, SESSION, "p2", now=NOW) == []

    def test_unknown_subject_never_fires(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.CATEGORY, operator="<=", value=100, category_id="ghost"),
            RuleAction(type=RuleActionType.ADD, value=1),
        )
        assert evaluate_rules(state, SESSION, "p1", now=NOW) == []

    def test_round_entry_count(self):
        state = single_rule_state(
            RuleCondition(type=ConditionType.ROUND, operator=">=", value=2, round_id="r1"),
            RuleAction(type=RuleActionType.ADD, value=3),
            entries=[
                make_entry("p1", 1, "houses", round_id="r1"),
                make_entry("p1", 1, "houses", round_id="r1"),
                make_entry("p1", 1, "houses", round_id="r2"),
                make_entry("p2", 1, "houses", round_id="r1"),
            ],
        )
        assert len(evaluate_rules(state, SESSION, "p1", now=NOW)) == 1
        assert evaluate_rules(state, SESSION, "p2", now=NOW) == []


class TestActiveRules:
    """Tests for which attached rules may fire."""

    def test_rule_removed_from_template(self, bonus_state):
        template = bonus_state.templates[bonus_state.sessions[SESSION].template_id]
        template.rule_templates = []
        state = with_houses(bonus_state, 10)
        assert active_rules(state, SESSION) == []
        assert evaluate_rules(state, SESSION, "p1", now=NOW) == []

    def test_template_rule_disabled(self, bonus_state):
        template = bonus_state.templates[bonus_state.sessions[SESSION].template_id]
        template.rule_templates = [replace(rt, enabled=False) for rt in template.rule_templates]
        assert active_rules(bonus_state, SESSION) == []

    def test_session_rule_disabled(self, bonus_state):
        bonus_state.rules["bonus"] = replace(bonus_state.rules["bonus"], enabled=False)
        assert active_rules(bonus_state, SESSION) == []

    def test_structural_match_without_template_id(self):
        condition = RuleCondition(type=ConditionType.TOTAL, operator=">=", value=10)
        state = single_rule_state(
            condition,
            RuleAction(type=RuleActionType.ADD, value=5),
            entries=[make_entry("p1", 10, "houses")],
            linked=False,
        )
        assert [r.id for r in active_rules(state, SESSION)] == ["r"]

    def test_structural_mismatch(self):
        condition = RuleCondition(type=ConditionType.TOTAL, operator=">=", value=10)
        state = single_rule_state(condition, RuleAction(type=RuleActionType.ADD, value=5), linked=False)
        template = state.templates[state.sessions[SESSION].template_id]
        template.rule_templates = [
            replace(rt, action=RuleAction(type=RuleActionType.ADD, value=6))
            for rt in template.rule_templates
        ]
        assert active_rules(state, SESSION) == []


class TestErrorsAndDryRun:
    """Tests for error isolation and test_rule()."""

    def test_failing_rule_does_not_stop_others(self, monkeypatch, caplog):
        broken, broken_template = make_rule(
            "broken",
            "Broken",
            RuleCondition(type=ConditionType.TOTAL, operator=">=", value=0),
            RuleAction(type=RuleActionType.ADD, value=1),
        )
        ok, ok_template = make_rule(
            "ok",
            "Ok",
            RuleCondition(type=ConditionType.TOTAL, operator=">=", value=0),
            RuleAction(type=RuleActionType.ADD, value=2),
        )
        state = build_state(rules=[broken, ok], rule_templates=[broken_template, ok_template])

        real_apply = rule_engine.apply_rule_action

        def apply(rule, ctx, now=None):
            if rule.name == "Broken":
                raise RuntimeError("boom")
            return real_apply(rule, ctx, now)

        monkeypatch.setattr(rule_engine, "apply_rule_action", apply)
        with caplog.at_level(logging.WARNING):
            entries = evaluate_rules(state, SESSION, "p1", now=NOW)

        assert [e.value for e in entries] == [2]
        assert "Error evaluating rule Broken" in caplog.text

    def test_dry_run_triggers(self, bonus_state):
        state = with_houses(bonus_state, 12)
        result = dry_run(state.rules["bonus"], state, SESSION, "p1", now=NOW)
        assert result.would_trigger
        assert result.entry.value == 5
        assert len(state.entries) == 1

    def test_dry_run_not_triggered(self, bonus_state):
        result = dry_run(bonus_state.rules["bonus"], bonus_state, SESSION, "p1", now=NOW)
        assert not result.would_trigger
        assert result.entry is None

    def test_dry_run_ignores_enabled_flags(self, bonus_state):
        rule = replace(bonus_state.rules["bonus"], enabled=False, template_rule_id="gone")
        state = with_houses(bonus_state, 10)
        assert dry_run(rule, state, SESSION, "p1", now=NOW).would_trigger
