"""
Evaluation Cycle - Decides when rules run and which of their entries stick.

The cycle:
1. Find the session's most recent manual entry (the trigger)
2. Skip if it is too old, or if rule entries already followed it
3. Evaluate rules for the triggering player only
4. Drop candidates that duplicate an existing or already accepted entry

Rule-engine entries are never triggers, so a rule firing cannot start
another cycle by itself.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
import time

from ..config import EPSILON, Settings
from ..engine_core.rule_engine import evaluate_rules
from ..engine_core.state import AppState, EntrySource, ScoreEntry

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """
    Outcome of one evaluation cycle.

    committed entries are what the caller should append to the ledger.
    """
    triggered: bool
    player_id: str | None = None
    committed: list[ScoreEntry] = field(default_factory=list)
    suppressed: list[ScoreEntry] = field(default_factory=list)
    reason: str | None = None


def is_duplicate(candidate: ScoreEntry, existing: ScoreEntry, window: float = 1.0) -> bool:
    """Same session, player, value, category and note, created within window seconds."""
    return (
        existing.session_id == candidate.session_id
        and existing.player_id == candidate.player_id
        and abs(existing.value - candidate.value) < EPSILON
        and existing.category_id == candidate.category_id
        and existing.note == candidate.note
        and abs(existing.created_at - candidate.created_at) < window
    )


def suppress_duplicates(
    candidates: list[ScoreEntry],
    existing: list[ScoreEntry],
    window: float = 1.0,
) -> tuple[list[ScoreEntry], list[ScoreEntry]]:
    """
    Split candidates into (accepted, suppressed).

    Accepted candidates count as existing for the ones after them.
    """
    accepted: list[ScoreEntry] = []
    suppressed: list[ScoreEntry] = []
    for candidate in candidates:
        if any(is_duplicate(candidate, e, window) for e in (*existing, *accepted)):
            logger.debug("Rule entry already exists, skipping: %s", candidate.note)
            suppressed.append(candidate)
        else:
            accepted.append(candidate)
    return accepted, suppressed


@dataclass
class EvaluationCycle:
    """
    Caller-side rule loop for one session.

    Usage:
        cycle = EvaluationCycle.from_settings(Settings.from_env())
        result = cycle.run(state, session_id, round_id)
        state = state.with_entries(result.committed)
    """
    duplicate_window: float = 1.0
    trigger_window: float = 1.0
    followup_window: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> EvaluationCycle:
        return cls(
            duplicate_window=settings.duplicate_window,
            trigger_window=settings.trigger_window,
            followup_window=settings.followup_window,
        )

    def find_trigger(self, state: AppState, session_id: str) -> ScoreEntry | None:
        """Most recent manual entry of the session."""
        manual = [e for e in state.session_entries(session_id) if e.source == EntrySource.MANUAL]
        if not manual:
            return None
        return max(manual, key=lambda e: e.created_at)

    def already_processed(self, state: AppState, trigger: ScoreEntry) -> bool:
        """Whether rule entries for the trigger's player followed it within the follow-up window."""
        return any(
            e.source == EntrySource.RULE_ENGINE
            and e.player_id == trigger.player_id
            and trigger.created_at <= e.created_at < trigger.created_at + self.followup_window
            for e in state.session_entries(trigger.session_id)
        )

    def run(
        self,
        state: AppState,
        session_id: str,
        round_id: str | None = None,
        now: float | None = None,
    ) -> CycleResult:
        now = time.time() if now is None else now

        trigger = self.find_trigger(state, session_id)
        if trigger is None:
            return CycleResult(triggered=False, reason="no manual entry")

        age = now - trigger.created_at
        if age > self.trigger_window:
            logger.debug("Manual entry too old (%.3fs), skipping rule evaluation", age)
            return CycleResult(triggered=False, player_id=trigger.player_id, reason="trigger too old")

        if self.already_processed(state, trigger):
            logger.debug("Already processed rules for manual entry %s, skipping", trigger.id)
            return CycleResult(triggered=False, player_id=trigger.player_id, reason="already processed")

        player_id = trigger.player_id
        logger.debug("Evaluating rules for player %s after manual entry", player_id)
        candidates = evaluate_rules(state, session_id, player_id, round_id, now=now)

        scoped = []
        suppressed = []
        for candidate in candidates:
            if candidate.player_id != player_id:
                logger.warning(
                    "Rule entry has wrong player: expected %s, got %s - skipping",
                    player_id, candidate.player_id,
                )
                suppressed.append(candidate)
            else:
                scoped.append(candidate)

        accepted, duplicates = suppress_duplicates(
            scoped, state.session_entries(session_id), self.duplicate_window,
        )
        return CycleResult(
            triggered=True,
            player_id=player_id,
            committed=accepted,
            suppressed=suppressed + duplicates,
        )
