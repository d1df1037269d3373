"""
Pydantic Schemas for API - Request/response models and the state snapshot.

Two families of models live here:
- Snapshot models mirror the persisted key/value state (camelCase keys)
  and convert to the engine's dataclasses with to_domain()
- Request/response models define the HTTP contract (snake_case keys)

Error Codes:
- SESSION_NOT_FOUND: Session does not exist in the loaded state
- ENTRY_NOT_FOUND: Entry does not exist in the session
- RULE_NOT_FOUND: Rule id is not attached to the session
- FORMULA_ERROR: Formula could not be parsed or evaluated
- VALIDATION_ERROR: Request or snapshot failed validation
"""

from enum import Enum
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..engine_core import state as domain


# =============================================================================
# Enums
# =============================================================================

class ErrorCode(str, Enum):
    """Structured error codes."""
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    FORMULA_ERROR = "FORMULA_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# State snapshot (persisted layout)
# =============================================================================

class CamelModel(BaseModel):
    """Persisted records use camelCase keys; unknown keys are ignored."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SessionSettingsSnapshot(CamelModel):
    rounds_enabled: bool = False
    score_direction: Literal["higherWins", "lowerWins"] = "higherWins"
    allow_negative: bool = True


class SessionSnapshot(CamelModel):
    id: str
    title: str = ""
    settings: SessionSettingsSnapshot = Field(default_factory=SessionSettingsSnapshot)
    player_ids: list[str] = Field(default_factory=list)
    round_ids: list[str] = Field(default_factory=list)
    rule_ids: list[str] = Field(default_factory=list)
    object_value_ids: list[str] = Field(default_factory=list)
    template_id: Optional[str] = None

    def to_domain(self) -> domain.Session:
        return domain.Session(
            id=self.id,
            title=self.title,
            player_ids=list(self.player_ids),
            round_ids=list(self.round_ids),
            rule_ids=list(self.rule_ids),
            object_value_ids=list(self.object_value_ids),
            template_id=self.template_id,
            settings=domain.SessionSettings(
                rounds_enabled=self.settings.rounds_enabled,
                score_direction=domain.ScoreDirection(self.settings.score_direction),
                allow_negative=self.settings.allow_negative,
            ),
        )


class CategorySnapshot(CamelModel):
    id: str
    session_id: str
    name: str
    sort_order: int = 0
    parent_category_id: Optional[str] = None
    weight: Optional[float] = None
    formula: Optional[str] = None
    display_type: Literal["sum", "formula", "weighted"] = "sum"

    def to_domain(self) -> domain.CategoryDefinition:
        return domain.CategoryDefinition(
            id=self.id,
            session_id=self.session_id,
            name=self.name,
            display_type=domain.DisplayType(self.display_type),
            parent_category_id=self.parent_category_id,
            formula=self.formula,
            weight=self.weight,
            sort_order=self.sort_order,
        )


class RoundSnapshot(CamelModel):
    id: str
    session_id: str
    index: int
    label: str = ""

    def to_domain(self) -> domain.Round:
        return domain.Round(id=self.id, session_id=self.session_id, index=self.index, label=self.label)


class EntrySnapshot(CamelModel):
    id: str
    session_id: str
    player_id: str
    created_at: float
    value: float
    round_id: Optional[str] = None
    category_id: Optional[str] = None
    note: Optional[str] = None
    source: Literal["manual", "ruleEngine"] = "manual"

    def to_domain(self) -> domain.ScoreEntry:
        return domain.ScoreEntry(
            id=self.id,
            session_id=self.session_id,
            player_id=self.player_id,
            value=self.value,
            created_at=self.created_at,
            category_id=self.category_id,
            round_id=self.round_id,
            note=self.note,
            source=domain.EntrySource(self.source),
        )


class ConditionSnapshot(CamelModel):
    type: Literal["total", "category", "round"]
    operator: Literal[">=", "<=", "==", "!=", ">", "<"]
    value: float
    category_id: Optional[str] = None
    round_id: Optional[str] = None

    def to_domain(self) -> domain.RuleCondition:
        return domain.RuleCondition(
            type=domain.ConditionType(self.type),
            operator=self.operator,
            value=self.value,
            category_id=self.category_id,
            round_id=self.round_id,
        )


class ActionSnapshot(CamelModel):
    type: Literal["add", "multiply", "set"]
    value: float
    target_category_id: Optional[str] = None

    def to_domain(self) -> domain.RuleAction:
        return domain.RuleAction(
            type=domain.RuleActionType(self.type),
            value=self.value,
            target_category_id=self.target_category_id,
        )


class RuleSnapshot(CamelModel):
    id: str = ""
    session_id: str = ""
    name: str
    condition: ConditionSnapshot
    action: ActionSnapshot
    enabled: bool = True
    template_rule_id: Optional[str] = None

    def to_domain(self) -> domain.ScoringRule:
        return domain.ScoringRule(
            id=self.id,
            session_id=self.session_id,
            name=self.name,
            condition=self.condition.to_domain(),
            action=self.action.to_domain(),
            enabled=self.enabled,
            template_rule_id=self.template_rule_id,
        )


class RuleTemplateSnapshot(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    condition: ConditionSnapshot
    action: ActionSnapshot
    enabled: bool = True
    required: bool = False

    def to_domain(self) -> domain.RuleTemplate:
        return domain.RuleTemplate(
            id=self.id,
            name=self.name,
            condition=self.condition.to_domain(),
            action=self.action.to_domain(),
            enabled=self.enabled,
            required=self.required,
            description=self.description,
        )


class ObjectReference(CamelModel):
    """Object-referential ownership: {"type": "object", "objectId": ...}."""
    type: Literal["object"]
    object_id: str


class WindowSnapshot(CamelModel):
    type: Literal["round", "phase", "object"]
    round_id: Optional[str] = None
    round_index: Optional[int] = None
    phase_id: Optional[str] = None
    object_id: Optional[str] = None


Ownership = Union[Literal["global", "player", "inactive"], ObjectReference]
ActiveWindow = Union[Literal["always"], WindowSnapshot]


def ownership_to_domain(ownership: Optional[Ownership]) -> Optional[domain.Ownership]:
    if ownership is None:
        return None
    if isinstance(ownership, ObjectReference):
        return domain.ObjectOwnership(object_id=ownership.object_id)
    return {
        "global": domain.GlobalOwnership(),
        "player": domain.PlayerOwnership(),
        "inactive": domain.InactiveOwnership(),
    }[ownership]


def window_to_domain(window: Optional[ActiveWindow]) -> Optional[domain.ActiveWindow]:
    if window is None:
        return None
    if window == "always":
        return domain.AlwaysActive()
    if window.type == "round":
        return domain.RoundWindow(round_id=window.round_id, round_index=window.round_index)
    if window.type == "phase":
        return domain.PhaseWindow(phase_id=window.phase_id)
    return domain.ObjectWindow(object_id=window.object_id or "")


class ObjectDefinitionSnapshot(CamelModel):
    id: str
    name: str
    type: Literal["number", "boolean", "string", "resource", "territory", "card", "custom", "set"] = "number"
    default_value: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[list[str]] = None
    description: Optional[str] = None
    ownership: Optional[Ownership] = None
    active_window: Optional[ActiveWindow] = None
    calculation: Optional[str] = None
    score_impact: Optional[str] = None
    set_type: Optional[Literal["identical", "elements"]] = None
    set_elements: list[str] = Field(default_factory=list)

    def to_domain(self) -> domain.ObjectDefinition:
        return domain.ObjectDefinition(
            id=self.id,
            name=self.name,
            type=domain.ObjectType(self.type),
            ownership=ownership_to_domain(self.ownership),
            active_window=window_to_domain(self.active_window),
            calculation=self.calculation,
            score_impact=self.score_impact,
            default_value=self.default_value,
            min=self.min,
            max=self.max,
            options=self.options,
            set_type=domain.SetType(self.set_type) if self.set_type else None,
            set_elements=list(self.set_elements),
            description=self.description,
        )


class MechanicSnapshot(CamelModel):
    id: str
    type: str
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    def to_domain(self) -> domain.GameMechanic:
        return domain.GameMechanic(
            id=self.id, type=self.type, name=self.name, enabled=self.enabled, config=dict(self.config),
        )


class TemplateSnapshot(CamelModel):
    id: str
    name: str
    version: str = "1.0"
    rule_templates: list[RuleTemplateSnapshot] = Field(default_factory=list)
    object_definitions: list[ObjectDefinitionSnapshot] = Field(default_factory=list)
    mechanics: list[MechanicSnapshot] = Field(default_factory=list)

    def to_domain(self) -> domain.GameTemplate:
        return domain.GameTemplate(
            id=self.id,
            name=self.name,
            version=self.version,
            object_definitions=[d.to_domain() for d in self.object_definitions],
            rule_templates=[r.to_domain() for r in self.rule_templates],
            mechanics=[m.to_domain() for m in self.mechanics],
        )


class SetElementSnapshot(CamelModel):
    element_object_definition_id: str
    quantity: float
    properties: dict[str, Any] = Field(default_factory=dict)


def _set_value_to_domain(value: Any) -> Any:
    """Element-set values arrive as camelCase dicts."""
    if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
        elements = [SetElementSnapshot.model_validate(v) for v in value]
        return [
            domain.SetElementValue(
                element_object_definition_id=e.element_object_definition_id,
                quantity=e.quantity,
                properties=dict(e.properties),
            )
            for e in elements
        ]
    return value


class ObjectValueSnapshot(CamelModel):
    id: str
    session_id: str
    object_definition_id: str
    player_id: Optional[str] = None
    value: Any = None
    updated_at: float = 0.0
    updated_by: str = "manual"
    state: Optional[str] = None
    computed_value: Any = None
    last_computed_at: Optional[float] = None

    def to_domain(self) -> domain.ObjectValue:
        return domain.ObjectValue(
            id=self.id,
            session_id=self.session_id,
            object_definition_id=self.object_definition_id,
            value=_set_value_to_domain(self.value),
            player_id=self.player_id,
            computed_value=self.computed_value,
            state=self.state,
            updated_at=self.updated_at,
            updated_by=self.updated_by,
            last_computed_at=self.last_computed_at,
        )


class StateSnapshot(CamelModel):
    """The persisted application state, as the store serializes it."""
    sessions: dict[str, SessionSnapshot] = Field(default_factory=dict)
    categories: dict[str, CategorySnapshot] = Field(default_factory=dict)
    rounds: dict[str, RoundSnapshot] = Field(default_factory=dict)
    entries: dict[str, EntrySnapshot] = Field(default_factory=dict)
    rules: dict[str, RuleSnapshot] = Field(default_factory=dict)
    templates: dict[str, TemplateSnapshot] = Field(default_factory=dict)
    object_values: dict[str, ObjectValueSnapshot] = Field(default_factory=dict)

    def to_domain(self) -> domain.AppState:
        return domain.AppState(
            sessions={k: v.to_domain() for k, v in self.sessions.items()},
            categories={k: v.to_domain() for k, v in self.categories.items()},
            rounds={k: v.to_domain() for k, v in self.rounds.items()},
            entries={k: v.to_domain() for k, v in self.entries.items()},
            rules={k: v.to_domain() for k, v in self.rules.items()},
            templates={k: v.to_domain() for k, v in self.templates.items()},
            object_values={k: v.to_domain() for k, v in self.object_values.items()},
        )


# =============================================================================
# Request Models
# =============================================================================

class FormulaRequest(BaseModel):
    """A formula to validate or inspect."""
    formula: str = Field(..., description="Formula text, e.g. '{territories} * 2'")


class EvaluateRequest(BaseModel):
    """Evaluate a formula against a flat reference map."""
    formula: str
    references: dict[str, float] = Field(
        default_factory=dict,
        description="Reference name -> value, matched case-insensitively",
    )
    round_index: Optional[int] = Field(None, description="Value of round()")


class EntryRequest(BaseModel):
    """A manual score entry."""
    player_id: str
    value: float
    category_id: Optional[str] = None
    round_id: Optional[str] = None
    note: Optional[str] = None


class RuleTestRequest(BaseModel):
    """Dry-run a session rule (by id) or an ad-hoc rule for one player."""
    player_id: str
    round_id: Optional[str] = None
    rule_id: Optional[str] = None
    rule: Optional[RuleSnapshot] = None


# =============================================================================
# Response Models
# =============================================================================

class FormulaValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None


class EvaluateResponse(BaseModel):
    value: float


class ReferencesResponse(BaseModel):
    references: list[str] = Field(default_factory=list, description="Sorted reference names")


class LoadStateResponse(BaseModel):
    session_ids: list[str]


class EntryInfo(BaseModel):
    """A ledger entry."""
    id: str
    session_id: str
    player_id: str
    value: float
    created_at: float
    category_id: Optional[str] = None
    round_id: Optional[str] = None
    note: Optional[str] = None
    source: str

    @classmethod
    def from_entry(cls, entry: domain.ScoreEntry) -> "EntryInfo":
        return cls(
            id=entry.id,
            session_id=entry.session_id,
            player_id=entry.player_id,
            value=entry.value,
            created_at=entry.created_at,
            category_id=entry.category_id,
            round_id=entry.round_id,
            note=entry.note,
            source=entry.source.value,
        )


class EntryResponse(BaseModel):
    entry: EntryInfo
    rule_entries: list[EntryInfo] = Field(default_factory=list)


class RemoveEntryResponse(BaseModel):
    success: bool
    entry_id: str


class PlayerTotals(BaseModel):
    player_id: str
    categories: dict[str, float] = Field(default_factory=dict, description="Category id -> total")
    total: float = 0.0


class TotalsResponse(BaseModel):
    session_id: str
    round_id: Optional[str] = None
    players: list[PlayerTotals] = Field(default_factory=list)
    winners: list[str] = Field(default_factory=list)


class RuleTestResponse(BaseModel):
    would_trigger: bool
    entry: Optional[EntryInfo] = None


class ValidationResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    error_code: ErrorCode
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str = "tally"
    version: str = "1.0.0"
    env: str = "development"
