"""
API Module - HTTP interface to the scoring engine.

Exposes the engine via REST API for the scorekeeping app:
1. Authors validate and try out formulas
2. The app loads its persisted state snapshot
3. Manual entries are added; rule entries come back with them
4. Totals and winners are read per session

State is held in memory; the app's own store stays authoritative.
"""

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
    EntryResponse,
    TotalsResponse,
    RuleTestResponse,
    ValidationResponse,
    ErrorResponse,
    ErrorCode,
)
from .service import APIService
from .app import create_app

__all__ = [
    # Requests
    "FormulaRequest",
    "EvaluateRequest",
    "EntryRequest",
    "RuleTestRequest",
    "StateSnapshot",
    # Responses
    "FormulaValidationResponse",
    "EvaluateResponse",
    "ReferencesResponse",
    "EntryResponse",
    "TotalsResponse",
    "RuleTestResponse",
    "ValidationResponse",
    "ErrorResponse",
    "ErrorCode",
    # Service
    "APIService",
    "create_app",
]
