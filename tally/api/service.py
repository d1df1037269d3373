"""
API Service - Business logic layer between API and engine.

The service:
1. Translates API requests to engine calls
2. Owns the session manager holding the loaded state
3. Maps engine failures to ErrorResponse values

This layer is framework-agnostic (can be used with FastAPI, Flask, etc.)
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging

from .schemas import (
    # Requests
    FormulaRequest,
    EvaluateRequest,
    EntryRequest,
    RuleTestRequest,
    StateSnapshot,
    # Responses
    FormulaValidationResponse,
    EvaluateResponse,
    ReferencesResponse,
    LoadStateResponse,
    EntryInfo,
    EntryResponse,
    RemoveEntryResponse,
    PlayerTotals,
    TotalsResponse,
    RuleTestResponse,
    ValidationResponse,
    ErrorResponse,
    ErrorCode,
)
from ..config import Settings
from ..engine_core.expression import (
    FormulaError,
    evaluate_expression,
    extract_references,
    validate,
)
from ..engine_core.rule_engine import test_rule
from ..session import SessionManager
from ..template_schema import validate_template

logger = logging.getLogger(__name__)


def _session_not_found(session_id: str) -> ErrorResponse:
    return ErrorResponse(
        error=f"Session not found: {session_id}",
        error_code=ErrorCode.SESSION_NOT_FOUND,
    )


@dataclass
class APIService:
    """
    Main API service.

    Usage:
        service = APIService()
        service.load_state(snapshot)
        totals = service.get_totals(session_id)
        response = service.add_entry(session_id, request)
    """
    settings: Settings = field(default_factory=Settings)
    session_manager: SessionManager | None = None

    def __post_init__(self):
        if self.session_manager is None:
            self.session_manager = SessionManager(settings=self.settings)

    # =========================================================================
    # Formulas
    # =========================================================================

    def validate_formula(self, request: FormulaRequest) -> FormulaValidationResponse:
        result = validate(request.formula)
        return FormulaValidationResponse(valid=result.valid, error=result.error)

    def evaluate_formula(self, request: EvaluateRequest) -> EvaluateResponse | ErrorResponse:
        """
        Evaluate a formula against a flat reference map.

        Errors are returned, not raised, so authors see the exact message.
        """
        try:
            value = evaluate_expression(request.formula, request.references, request.round_index)
        except FormulaError as e:
            return ErrorResponse(
                error=str(e),
                error_code=ErrorCode.FORMULA_ERROR,
                details={"type": type(e).__name__},
            )
        return EvaluateResponse(value=value)

    def formula_references(self, request: FormulaRequest) -> ReferencesResponse:
        return ReferencesResponse(references=sorted(extract_references(request.formula)))

    # =========================================================================
    # State and sessions
    # =========================================================================

    def load_state(self, snapshot: StateSnapshot) -> LoadStateResponse:
        """Replace the held state with a persisted snapshot."""
        session_ids = self.session_manager.load(snapshot.to_domain())
        logger.info("Loaded state with %d session(s)", len(session_ids))
        return LoadStateResponse(session_ids=session_ids)

    def get_totals(self, session_id: str, round_id: str | None = None) -> TotalsResponse | ErrorResponse:
        if self.session_manager.get_session(session_id) is None:
            return _session_not_found(session_id)

        per_player = self.session_manager.totals(session_id, round_id)
        players = [
            PlayerTotals(player_id=player_id, categories=categories, total=sum(categories.values()))
            for player_id, categories in per_player.items()
        ]
        return TotalsResponse(
            session_id=session_id,
            round_id=round_id,
            players=players,
            winners=self.session_manager.winners(session_id, round_id),
        )

    def add_entry(self, session_id: str, request: EntryRequest) -> EntryResponse | ErrorResponse:
        """Add a manual entry; the response carries any rule entries it triggered."""
        if self.session_manager.get_session(session_id) is None:
            return _session_not_found(session_id)
        try:
            result = self.session_manager.add_entry(
                session_id,
                request.player_id,
                request.value,
                category_id=request.category_id,
                round_id=request.round_id,
                note=request.note,
            )
        except ValueError as e:
            return ErrorResponse(error=str(e), error_code=ErrorCode.VALIDATION_ERROR)

        return EntryResponse(
            entry=EntryInfo.from_entry(result.entry),
            rule_entries=[EntryInfo.from_entry(e) for e in result.rule_entries],
        )

    def remove_entry(self, session_id: str, entry_id: str) -> RemoveEntryResponse | ErrorResponse:
        if self.session_manager.get_session(session_id) is None:
            return _session_not_found(session_id)
        if not self.session_manager.remove_entry(session_id, entry_id):
            return ErrorResponse(
                error=f"Entry not found: {entry_id}",
                error_code=ErrorCode.ENTRY_NOT_FOUND,
            )
        return RemoveEntryResponse(success=True, entry_id=entry_id)

    def test_rule(self, session_id: str, request: RuleTestRequest) -> RuleTestResponse | ErrorResponse:
        """Dry-run an attached rule (rule_id) or an ad-hoc one (rule)."""
        state = self.session_manager.state
        if state.get_session(session_id) is None:
            return _session_not_found(session_id)

        if request.rule is not None:
            rule = request.rule.to_domain()
        elif request.rule_id and request.rule_id in state.rules:
            rule = state.rules[request.rule_id]
        else:
            return ErrorResponse(
                error=f"Rule not found: {request.rule_id}",
                error_code=ErrorCode.RULE_NOT_FOUND,
            )

        result = test_rule(rule, state, session_id, request.player_id, request.round_id)
        return RuleTestResponse(
            would_trigger=result.would_trigger,
            entry=EntryInfo.from_entry(result.entry) if result.entry else None,
        )

    def validate_session(self, session_id: str) -> ValidationResponse | ErrorResponse:
        if self.session_manager.get_session(session_id) is None:
            return _session_not_found(session_id)
        result = validate_template(self.session_manager.state, session_id)
        return ValidationResponse(valid=result.valid, errors=result.errors, warnings=result.warnings)
