"""
Scoring State - Immutable snapshot of a scorekeeping application.

Design principles:
- Immutable-friendly: every change returns a new AppState
- Serializable: mirrors the persisted key/value layout (records keyed by id)
- Derived values are never stored here; totals are recomputed on demand
- Ownership and activity windows are explicit tagged variants
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Union
from enum import Enum
import uuid


def new_id() -> str:
    """Generate a short unique record id."""
    return uuid.uuid4().hex[:10]


class EntrySource(Enum):
    """Who created a score entry."""
    MANUAL = "manual"
    RULE_ENGINE = "ruleEngine"


class DisplayType(Enum):
    """Which aggregation pass shapes a category total."""
    SUM = "sum"
    FORMULA = "formula"
    WEIGHTED = "weighted"


class ScoreDirection(Enum):
    """How winners are picked."""
    HIGHER_WINS = "higherWins"
    LOWER_WINS = "lowerWins"


class ObjectType(Enum):
    """Value domain of a game object."""
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    RESOURCE = "resource"
    TERRITORY = "territory"
    CARD = "card"
    CUSTOM = "custom"
    SET = "set"


NUMERIC_OBJECT_TYPES = frozenset({
    ObjectType.NUMBER,
    ObjectType.RESOURCE,
    ObjectType.TERRITORY,
    ObjectType.CARD,
})


class SetType(Enum):
    """Set flavours: a plain count, or a bag of distinct elements."""
    IDENTICAL = "identical"
    ELEMENTS = "elements"


class ObjectState(Enum):
    """Lifecycle states of an object. Custom state strings are also allowed."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    OWNED = "owned"
    DISCARDED = "discarded"


# =============================================================================
# Ownership and activity windows
# =============================================================================

@dataclass(frozen=True)
class GlobalOwnership:
    """One shared instance, owned by nobody in particular."""


@dataclass(frozen=True)
class PlayerOwnership:
    """One instance per player."""


@dataclass(frozen=True)
class InactiveOwnership:
    """Defined but switched off."""


@dataclass(frozen=True)
class ObjectOwnership:
    """Owned by whoever owns the referenced object."""
    object_id: str


Ownership = Union[GlobalOwnership, PlayerOwnership, InactiveOwnership, ObjectOwnership]


@dataclass(frozen=True)
class AlwaysActive:
    """Active for the whole session."""


@dataclass(frozen=True)
class RoundWindow:
    """Active during one round (by id or index), or during any round."""
    round_id: str | None = None
    round_index: int | None = None


@dataclass(frozen=True)
class PhaseWindow:
    """
    Active during a phase.

    There is no phase engine yet: this only checks that the template
    declares an enabled phase mechanic.
    """
    phase_id: str | None = None


@dataclass(frozen=True)
class ObjectWindow:
    """Active while the referenced object is active or owned."""
    object_id: str


ActiveWindow = Union[AlwaysActive, RoundWindow, PhaseWindow, ObjectWindow]


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class ScoreEntry:
    """
    An immutable scoring fact.

    Entries are the only source of truth for raw scores. Rules never
    rewrite entries; they append compensating ones.
    """
    id: str
    session_id: str
    player_id: str
    value: float
    created_at: float
    category_id: str | None = None
    round_id: str | None = None
    note: str | None = None
    source: EntrySource = EntrySource.MANUAL


@dataclass
class CategoryDefinition:
    """A named scoring bucket, possibly nested under a parent."""
    id: str
    session_id: str
    name: str
    display_type: DisplayType = DisplayType.SUM
    parent_category_id: str | None = None
    formula: str | None = None
    weight: float | None = None
    sort_order: int = 0


@dataclass
class SetElementValue:
    """Quantity of one element kind inside an element set."""
    element_object_definition_id: str
    quantity: float
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class ObjectDefinition:
    """Template-level descriptor of a stateful game element."""
    id: str
    name: str
    type: ObjectType = ObjectType.NUMBER
    ownership: Ownership | None = None
    active_window: ActiveWindow | None = None
    calculation: str | None = None
    score_impact: str | None = None
    default_value: Any = None
    min: float | None = None
    max: float | None = None
    options: list[str] | None = None
    set_type: SetType | None = None
    set_elements: list[str] = field(default_factory=list)
    description: str | None = None

    @property
    def effective_ownership(self) -> Ownership:
        """Declared ownership, or the type-based default."""
        if self.ownership is not None:
            return self.ownership
        if self.type == ObjectType.STRING:
            return GlobalOwnership()
        return PlayerOwnership()

    @property
    def effective_window(self) -> ActiveWindow:
        return self.active_window or AlwaysActive()


@dataclass
class ObjectValue:
    """A concrete object instance, session-scoped or owned by one player."""
    id: str
    session_id: str
    object_definition_id: str
    value: Any
    player_id: str | None = None
    computed_value: Any = None
    state: str | None = None
    updated_at: float = 0.0
    updated_by: str = "manual"
    last_computed_at: float | None = None

    @property
    def current_value(self) -> Any:
        """Computed value when one exists, else the stored value."""
        if self.computed_value is not None:
            return self.computed_value
        return self.value


@dataclass
class Round:
    id: str
    session_id: str
    index: int
    label: str = ""


class ConditionType(Enum):
    TOTAL = "total"
    CATEGORY = "category"
    ROUND = "round"


class RuleActionType(Enum):
    ADD = "add"
    MULTIPLY = "multiply"
    SET = "set"


COMPARISON_OPERATORS = (">=", "<=", "==", "!=", ">", "<")


@dataclass(frozen=True)
class RuleCondition:
    type: ConditionType
    operator: str
    value: float
    category_id: str | None = None
    round_id: str | None = None


@dataclass(frozen=True)
class RuleAction:
    type: RuleActionType
    value: float
    target_category_id: str | None = None


@dataclass
class ScoringRule:
    """
    A rule attached to a session.

    template_rule_id points at the RuleTemplate this copy came from.
    Older copies lack it and are matched to templates structurally.
    """
    id: str
    session_id: str
    name: str
    condition: RuleCondition
    action: RuleAction
    enabled: bool = True
    template_rule_id: str | None = None


@dataclass
class RuleTemplate:
    id: str
    name: str
    condition: RuleCondition
    action: RuleAction
    enabled: bool = True
    required: bool = False
    description: str | None = None


@dataclass
class GameMechanic:
    id: str
    type: str
    name: str
    enabled: bool = True
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class GameTemplate:
    """Reusable game definition a session is created from."""
    id: str
    name: str
    object_definitions: list[ObjectDefinition] = field(default_factory=list)
    rule_templates: list[RuleTemplate] = field(default_factory=list)
    mechanics: list[GameMechanic] = field(default_factory=list)
    version: str = "1.0"

    def get_object_definition(self, definition_id: str) -> ObjectDefinition | None:
        """Get an object definition by id."""
        for definition in self.object_definitions:
            if definition.id == definition_id:
                return definition
        return None

    def find_object_definition(self, name_or_id: str) -> ObjectDefinition | None:
        """Find an object definition by case-insensitive name, falling back to id."""
        wanted = name_or_id.lower()
        for definition in self.object_definitions:
            if definition.name.lower() == wanted or definition.id == name_or_id:
                return definition
        return None

    def has_enabled_mechanic(self, mechanic_type: str) -> bool:
        return any(m.type == mechanic_type and m.enabled for m in self.mechanics)


@dataclass
class SessionSettings:
    rounds_enabled: bool = False
    score_direction: ScoreDirection = ScoreDirection.HIGHER_WINS
    allow_negative: bool = True


@dataclass
class Session:
    id: str
    title: str = ""
    player_ids: list[str] = field(default_factory=list)
    round_ids: list[str] = field(default_factory=list)
    rule_ids: list[str] = field(default_factory=list)
    object_value_ids: list[str] = field(default_factory=list)
    template_id: str | None = None
    settings: SessionSettings = field(default_factory=SessionSettings)


# =============================================================================
# Snapshot
# =============================================================================

@dataclass
class AppState:
    """
    Complete application state at a point in time.

    The scoring core only reads this. Changes are expressed as new
    snapshots built with the with_* helpers.
    """
    sessions: dict[str, Session] = field(default_factory=dict)
    categories: dict[str, CategoryDefinition] = field(default_factory=dict)
    rounds: dict[str, Round] = field(default_factory=dict)
    entries: dict[str, ScoreEntry] = field(default_factory=dict)
    rules: dict[str, ScoringRule] = field(default_factory=dict)
    templates: dict[str, GameTemplate] = field(default_factory=dict)
    object_values: dict[str, ObjectValue] = field(default_factory=dict)

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def get_template(self, session_id: str) -> GameTemplate | None:
        """Get the template a session was created from."""
        session = self.sessions.get(session_id)
        if not session or not session.template_id:
            return None
        return self.templates.get(session.template_id)

    def session_categories(self, session_id: str) -> list[CategoryDefinition]:
        return [c for c in self.categories.values() if c.session_id == session_id]

    def session_entries(self, session_id: str) -> list[ScoreEntry]:
        return [e for e in self.entries.values() if e.session_id == session_id]

    def session_rules(self, session_id: str) -> list[ScoringRule]:
        session = self.sessions.get(session_id)
        if not session:
            return []
        return [self.rules[rid] for rid in session.rule_ids if rid in self.rules]

    def get_round(self, round_id: str | None) -> Round | None:
        if round_id is None:
            return None
        return self.rounds.get(round_id)

    def find_round_by_index(self, session_id: str, index: int) -> Round | None:
        for rnd in self.rounds.values():
            if rnd.session_id == session_id and rnd.index == index:
                return rnd
        return None

    def session_objects(self, session_id: str) -> list[ObjectValue]:
        """All object instances of a session, in session order when listed."""
        session = self.sessions.get(session_id)
        if session and session.object_value_ids:
            return [
                self.object_values[oid]
                for oid in session.object_value_ids
                if oid in self.object_values
            ]
        return [v for v in self.object_values.values() if v.session_id == session_id]

    def get_object_by_definition(
        self,
        session_id: str,
        definition_id: str,
        player_id: str | None = None,
    ) -> ObjectValue | None:
        """Get the instance keyed by (definition, player). None player means session scope."""
        for value in self.session_objects(session_id):
            if value.object_definition_id == definition_id and value.player_id == player_id:
                return value
        return None

    def get_object_value(
        self,
        session_id: str,
        definition_id: str,
        player_id: str | None = None,
    ) -> Any:
        """Current (computed or stored) value of an instance, or None if absent."""
        instance = self.get_object_by_definition(session_id, definition_id, player_id)
        if instance is None:
            return None
        return instance.current_value

    def with_entry(self, entry: ScoreEntry) -> AppState:
        """Return new state with an entry appended."""
        return self.with_entries([entry])

    def with_entries(self, entries: list[ScoreEntry]) -> AppState:
        new_entries = self.entries.copy()
        for entry in entries:
            new_entries[entry.id] = entry
        return self._copy_with(entries=new_entries)

    def without_entry(self, entry_id: str) -> AppState:
        """Return new state with an entry removed."""
        new_entries = {eid: e for eid, e in self.entries.items() if eid != entry_id}
        return self._copy_with(entries=new_entries)

    def with_object_values(self, values: list[ObjectValue]) -> AppState:
        """Return new state with object instances added or replaced."""
        new_values = self.object_values.copy()
        new_sessions = self.sessions.copy()
        for value in values:
            new_values[value.id] = value
            session = new_sessions.get(value.session_id)
            if session and session.object_value_ids and value.id not in session.object_value_ids:
                new_sessions[value.session_id] = replace(
                    session, object_value_ids=[*session.object_value_ids, value.id]
                )
        return self._copy_with(object_values=new_values, sessions=new_sessions)

    def _copy_with(self, **kwargs) -> AppState:
        """Create a copy with some fields replaced."""
        return AppState(
            sessions=kwargs.get("sessions", self.sessions),
            categories=kwargs.get("categories", self.categories),
            rounds=kwargs.get("rounds", self.rounds),
            entries=kwargs.get("entries", self.entries),
            rules=kwargs.get("rules", self.rules),
            templates=kwargs.get("templates", self.templates),
            object_values=kwargs.get("object_values", self.object_values),
        )
