"""
Evaluation Context - The explicit parameter object threaded through the core.

Nothing in the engine reads ambient globals: every object, aggregation and
rule evaluation receives the snapshot and scope it works on.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import AppState, GameTemplate


@dataclass(frozen=True)
class EvaluationContext:
    """
    Scope of one evaluation.

    player_id None means session scope. resolving holds the object
    definition ids currently being resolved through ownership/window
    references, to break reference loops.
    """
    state: AppState
    session_id: str
    player_id: str | None = None
    round_id: str | None = None
    resolving: frozenset[str] = field(default_factory=frozenset)

    @property
    def template(self) -> GameTemplate | None:
        return self.state.get_template(self.session_id)

    @property
    def round_index(self) -> int:
        """Index of the current round, 0 when there is none."""
        rnd = self.state.get_round(self.round_id)
        return rnd.index if rnd else 0

    def for_player(self, player_id: str | None) -> EvaluationContext:
        return replace(self, player_id=player_id)

    def entering(self, definition_id: str) -> EvaluationContext:
        return replace(self, resolving=self.resolving | {definition_id})
