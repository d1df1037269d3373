"""
FastAPI Application - REST API for the scoring engine.

Endpoints:
    GET    /api/v1/health                           Health check
    POST   /api/v1/formulas/validate                Check formula syntax
    POST   /api/v1/formulas/evaluate                Evaluate a formula
    POST   /api/v1/formulas/references              List formula references
    PUT    /api/v1/state                            Load a persisted state snapshot
    GET    /api/v1/sessions/{id}/totals             Category totals, totals and winners
    POST   /api/v1/sessions/{id}/entries            Add a manual entry (runs rules)
    DELETE /api/v1/sessions/{id}/entries/{entry_id} Delete an entry
    POST   /api/v1/sessions/{id}/rules/test         Dry-run a rule
    GET    /api/v1/sessions/{id}/validation         Validate the session template

Rule Evaluation Flow:
    1. POST /entries appends the manual entry
    2. Rules are evaluated for that entry's player only
    3. Rule entries that duplicate a recent identical entry are dropped
    4. Response includes the committed rule_entries

All responses are JSON with explicit Pydantic schemas.
"""

from typing import Annotated, Optional, Union


def create_app(service=None):
    """
    Create the FastAPI application.

    Args:
        service: Optional APIService instance (creates new if not provided)

    Returns:
        FastAPI application instance
    """
    try:
        from fastapi import FastAPI, Query
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse
    except ImportError:
        raise ImportError(
            "FastAPI not installed. Install with: pip install fastapi uvicorn"
        )

    from ..config import Settings
    from .service import APIService
    from .schemas import (
        # Request models
        FormulaRequest,
        EvaluateRequest,
        EntryRequest,
        RuleTestRequest,
        StateSnapshot,
        # Response models
        FormulaValidationResponse,
        EvaluateResponse,
        ReferencesResponse,
        LoadStateResponse,
        EntryResponse,
        RemoveEntryResponse,
        TotalsResponse,
        RuleTestResponse,
        ValidationResponse,
        ErrorResponse,
        HealthResponse,
        # Enums
        ErrorCode,
    )

    api_service = service or APIService(settings=Settings.from_env())
    settings = api_service.settings

    app = FastAPI(
        title="Tally Scoring API",
        description="""
Board game scorekeeping engine: formulas, category rollups, objects and rules.

## Error Codes

| Code | Description |
|------|-------------|
| `SESSION_NOT_FOUND` | Session is not in the loaded state |
| `ENTRY_NOT_FOUND` | Entry does not belong to the session |
| `RULE_NOT_FOUND` | Rule id is not in the loaded state |
| `FORMULA_ERROR` | Formula could not be parsed or evaluated |
| `VALIDATION_ERROR` | Request failed validation |
        """,
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Error helpers
    # =========================================================================

    status_codes = {
        ErrorCode.SESSION_NOT_FOUND: 404,
        ErrorCode.ENTRY_NOT_FOUND: 404,
        ErrorCode.RULE_NOT_FOUND: 404,
        ErrorCode.FORMULA_ERROR: 400,
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.INTERNAL_ERROR: 500,
    }

    def make_error_response(error: ErrorResponse) -> JSONResponse:
        """Create a standardized error response."""
        return JSONResponse(
            status_code=status_codes.get(error.error_code, 400),
            content=error.model_dump(mode="json"),
        )

    def respond(response):
        if isinstance(response, ErrorResponse):
            return make_error_response(response)
        return response

    # =========================================================================
    # Formula Endpoints
    # =========================================================================

    @app.post(
        "/api/v1/formulas/validate",
        response_model=FormulaValidationResponse,
        tags=["Formulas"],
        summary="Check formula syntax",
    )
    async def validate_formula(request: FormulaRequest) -> FormulaValidationResponse:
        """Tokenize and check parentheses and function names. Never fails."""
        return api_service.validate_formula(request)

    @app.post(
        "/api/v1/formulas/evaluate",
        response_model=EvaluateResponse,
        responses={400: {"model": ErrorResponse}},
        tags=["Formulas"],
        summary="Evaluate a formula",
    )
    async def evaluate_formula(request: EvaluateRequest) -> Union[EvaluateResponse, JSONResponse]:
        """
        Evaluate a formula against a flat reference map.

        Unknown references are 0. Syntax and runtime errors return
        400 with `FORMULA_ERROR`.
        """
        return respond(api_service.evaluate_formula(request))

    @app.post(
        "/api/v1/formulas/references",
        response_model=ReferencesResponse,
        tags=["Formulas"],
        summary="List the references a formula uses",
    )
    async def formula_references(request: FormulaRequest) -> ReferencesResponse:
        return api_service.formula_references(request)

    # =========================================================================
    # State Endpoint
    # =========================================================================

    @app.put(
        "/api/v1/state",
        response_model=LoadStateResponse,
        tags=["State"],
        summary="Load a persisted state snapshot",
    )
    async def load_state(snapshot: StateSnapshot) -> LoadStateResponse:
        """Replace the in-memory state with the store's camelCase snapshot."""
        return api_service.load_state(snapshot)

    # =========================================================================
    # Session Endpoints
    # =========================================================================

    @app.get(
        "/api/v1/sessions/{session_id}/totals",
        response_model=TotalsResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Sessions"],
        summary="Get category totals and winners",
    )
    async def get_totals(
        session_id: str,
        round_id: Annotated[Optional[str], Query(description="Round in context")] = None,
    ) -> Union[TotalsResponse, JSONResponse]:
        return respond(api_service.get_totals(session_id, round_id))

    @app.post(
        "/api/v1/sessions/{session_id}/entries",
        response_model=EntryResponse,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        tags=["Entries"],
        summary="Add a manual score entry",
    )
    async def add_entry(session_id: str, request: EntryRequest) -> Union[EntryResponse, JSONResponse]:
        """
        Add a manual entry and run the evaluation cycle.

        `rule_entries` lists the rule-generated entries that were committed.
        """
        return respond(api_service.add_entry(session_id, request))

    @app.delete(
        "/api/v1/sessions/{session_id}/entries/{entry_id}",
        response_model=RemoveEntryResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Entries"],
        summary="Delete a score entry",
    )
    async def remove_entry(session_id: str, entry_id: str) -> Union[RemoveEntryResponse, JSONResponse]:
        return respond(api_service.remove_entry(session_id, entry_id))

    @app.post(
        "/api/v1/sessions/{session_id}/rules/test",
        response_model=RuleTestResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Rules"],
        summary="Dry-run a rule for one player",
    )
    async def test_rule(session_id: str, request: RuleTestRequest) -> Union[RuleTestResponse, JSONResponse]:
        """Nothing is written; enabled flags and template membership are ignored."""
        return respond(api_service.test_rule(session_id, request))

    @app.get(
        "/api/v1/sessions/{session_id}/validation",
        response_model=ValidationResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Sessions"],
        summary="Validate the session's categories, objects and rules",
    )
    async def validate_session(session_id: str) -> Union[ValidationResponse, JSONResponse]:
        return respond(api_service.validate_session(session_id))

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get(
        "/api/v1/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint for load balancers."""
        return HealthResponse(env=settings.env)

    @app.get("/", tags=["System"])
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "Tally Scoring API",
            "version": "1.0.0",
            "docs": "/api/docs",
            "health": "/api/v1/health",
        }

    return app
