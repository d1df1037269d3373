"""
Session Manager - In-memory ledger and object-value store.

The scoring core never mutates state; this is the caller that does.
Every change swaps the held AppState for a new snapshot:
1. Manual entries are appended, then the evaluation cycle runs and its
   committed rule entries are appended too
2. Object values are validated against their definition before writing
3. Object refreshes merge computed values only; derived states stay derived

No persistence - load() takes a snapshot from whatever store the caller has.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
import logging
import time

from ..config import Settings
from ..engine_core.aggregation import compute_category_totals, find_winners
from ..engine_core.objects import ObjectEvaluation, default_value_for, evaluate_all_objects
from ..engine_core.resolvers import flatten_object_value
from ..engine_core.state import (
    AppState,
    EntrySource,
    ObjectDefinition,
    ObjectValue,
    ScoreEntry,
    Session,
    new_id,
)
from ..template_schema.validation import ValueCheck, validate_object_value
from .cycle import CycleResult, EvaluationCycle

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """Raised when an operation names a session that is not loaded."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


@dataclass
class EntryResult:
    """A manual entry and what its evaluation cycle committed."""
    entry: ScoreEntry
    rule_entries: list[ScoreEntry] = field(default_factory=list)
    cycle: CycleResult | None = None


class SessionManager:
    """
    Holds the current AppState and applies changes to it.

    Usage:
        manager = SessionManager(state)
        result = manager.add_entry("s1", "p1", 5, category_id="c1")
        manager.winners("s1")
    """

    def __init__(self, state: AppState | None = None, settings: Settings | None = None):
        self._state = state or AppState()
        self.settings = settings or Settings()
        self.cycle = EvaluationCycle.from_settings(self.settings)

    @property
    def state(self) -> AppState:
        return self._state

    def load(self, state: AppState) -> list[str]:
        """Replace the held snapshot. Returns the loaded session ids."""
        self._state = state
        return list(state.sessions)

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        return self._state.get_session(session_id)

    def list_sessions(self) -> list[str]:
        return list(self._state.sessions)

    def _require_session(self, session_id: str) -> Session:
        session = self._state.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # =========================================================================
    # Ledger
    # =========================================================================

    def add_entry(
        self,
        session_id: str,
        player_id: str,
        value: float,
        category_id: str | None = None,
        round_id: str | None = None,
        note: str | None = None,
        now: float | None = None,
    ) -> EntryResult:
        """
        Append a manual entry and run the evaluation cycle.

        The cycle is scoped to round_id; committed rule entries are appended.
        """
        session = self._require_session(session_id)
        if session.player_ids and player_id not in session.player_ids:
            raise ValueError(f"Player {player_id} is not in session {session_id}")

        now = time.time() if now is None else now
        entry = ScoreEntry(
            id=new_id(),
            session_id=session_id,
            player_id=player_id,
            value=float(value),
            created_at=now,
            category_id=category_id,
            round_id=round_id,
            note=note,
            source=EntrySource.MANUAL,
        )
        self._state = self._state.with_entry(entry)

        cycle = self.cycle.run(self._state, session_id, round_id, now=now)
        if cycle.committed:
            logger.info(
                "Committed %d rule entries for player %s in session %s",
                len(cycle.committed), player_id, session_id,
            )
            self._state = self._state.with_entries(cycle.committed)

        return EntryResult(entry=entry, rule_entries=cycle.committed, cycle=cycle)

    def remove_entry(self, session_id: str, entry_id: str) -> bool:
        """Delete an entry. Returns False if it does not belong to the session."""
        self._require_session(session_id)
        entry = self._state.entries.get(entry_id)
        if entry is None or entry.session_id != session_id:
            return False
        self._state = self._state.without_entry(entry_id)
        return True

    # =========================================================================
    # Objects
    # =========================================================================

    def _object(
        self,
        session_id: str,
        definition_id: str,
        player_id: str | None,
    ) -> tuple[ObjectDefinition, ObjectValue]:
        self._require_session(session_id)
        template = self._state.get_template(session_id)
        definition = template.get_object_definition(definition_id) if template else None
        if definition is None:
            raise KeyError(f"Unknown object definition: {definition_id}")
        instance = self._state.get_object_by_definition(session_id, definition_id, player_id)
        if instance is None:
            raise KeyError(f"No instance of {definition_id} for player {player_id}")
        return definition, instance

    def set_object_value(
        self,
        session_id: str,
        definition_id: str,
        value,
        player_id: str | None = None,
        now: float | None = None,
    ) -> ValueCheck:
        """Validate and store a manual object value. Invalid values are not written."""
        definition, instance = self._object(session_id, definition_id, player_id)
        check = validate_object_value(value, definition)
        if not check.valid:
            return check

        updated = replace(
            instance,
            value=value,
            updated_at=time.time() if now is None else now,
            updated_by="manual",
        )
        self._state = self._state.with_object_values([updated])
        return check

    def increment_object(
        self,
        session_id: str,
        definition_id: str,
        amount: float = 1,
        player_id: str | None = None,
        now: float | None = None,
    ) -> ValueCheck:
        definition, instance = self._object(session_id, definition_id, player_id)
        current = flatten_object_value(definition, instance.value)
        if current is None:
            return ValueCheck.fail(f"Object '{definition.name}' is not numeric")
        new_value = current + amount
        if new_value.is_integer() and isinstance(instance.value, int):
            new_value = int(new_value)
        return self.set_object_value(session_id, definition_id, new_value, player_id, now)

    def reset_object(
        self,
        session_id: str,
        definition_id: str,
        player_id: str | None = None,
        now: float | None = None,
    ) -> ObjectValue:
        """Back to the default value, dropping computed value and explicit state."""
        definition, instance = self._object(session_id, definition_id, player_id)
        updated = replace(
            instance,
            value=default_value_for(definition),
            computed_value=None,
            state=None,
            updated_at=time.time() if now is None else now,
            updated_by="manual",
        )
        self._state = self._state.with_object_values([updated])
        return updated

    def refresh_objects(
        self,
        session_id: str,
        round_id: str | None = None,
        now: float | None = None,
    ) -> ObjectEvaluation:
        """
        Re-evaluate objects and store their computed values.

        Evaluated states are reported but not written: a stored state is
        an explicit override and would pin the object.
        """
        self._require_session(session_id)
        evaluation = evaluate_all_objects(self._state, session_id, round_id, now)

        merged = []
        for updated in evaluation.updated_objects:
            current = self._state.object_values.get(updated.id)
            if current is None:
                continue
            if current.computed_value != updated.computed_value:
                merged.append(replace(
                    current,
                    computed_value=updated.computed_value,
                    last_computed_at=updated.last_computed_at,
                ))
        if merged:
            self._state = self._state.with_object_values(merged)
        return evaluation

    # =========================================================================
    # Totals
    # =========================================================================

    def totals(self, session_id: str, round_id: str | None = None) -> dict[str, dict[str, float]]:
        """Category totals per player."""
        session = self._require_session(session_id)
        return {
            player_id: compute_category_totals(self._state, session_id, player_id, round_id)
            for player_id in session.player_ids
        }

    def player_totals(self, session_id: str, round_id: str | None = None) -> dict[str, float]:
        return {
            player_id: float(sum(categories.values()))
            for player_id, categories in self.totals(session_id, round_id).items()
        }

    def winners(self, session_id: str, round_id: str | None = None) -> list[str]:
        session = self._require_session(session_id)
        return find_winners(self.player_totals(session_id, round_id), session.settings.score_direction)
