"""
Engine Core - Deterministic scoring over immutable state snapshots.

The engine is the runtime that:
1. Parses and evaluates formulas
2. Resolves object ownership, activity and values
3. Aggregates entries into category totals
4. Evaluates rules into new ledger entries

Nothing here mutates its input or touches I/O.
"""

from .state import AppState, ScoreEntry, CategoryDefinition, ObjectDefinition, ObjectValue, ScoringRule
from .context import EvaluationContext
from .expression import (
    FormulaError,
    FormulaSyntaxError,
    FormulaRuntimeError,
    evaluate,
    validate,
    extract_references,
)
from .aggregation import compute_category_totals, compute_player_total, find_winners
from .rule_engine import evaluate_rules, test_rule, RuleTestResult

__all__ = [
    "AppState",
    "ScoreEntry",
    "CategoryDefinition",
    "ObjectDefinition",
    "ObjectValue",
    "ScoringRule",
    "EvaluationContext",
    "FormulaError",
    "FormulaSyntaxError",
    "FormulaRuntimeError",
    "evaluate",
    "validate",
    "extract_references",
    "compute_category_totals",
    "compute_player_total",
    "find_winners",
    "evaluate_rules",
    "test_rule",
    "RuleTestResult",
]
