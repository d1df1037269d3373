"""
Template Validation - Checks for session templates and object values.

Validates that:
1. The category forest has no cycles and no dangling parents
2. Category formulas, object calculations and score impacts parse
3. Formula references and rule targets point at something that exists
4. Object values fit their definition's value domain

Nothing here raises on invalid input; callers that want an exception
use ValidationResult.raise_for_errors().
"""

from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..engine_core.expression import validate as validate_formula, extract_references
from ..engine_core.resolvers import TOTAL_REFERENCE, is_number
from ..engine_core.state import (
    AppState,
    CategoryDefinition,
    GameTemplate,
    ObjectDefinition,
    ObjectOwnership,
    ObjectType,
    ObjectWindow,
    NUMERIC_OBJECT_TYPES,
    SetElementValue,
    SetType,
)


class TemplateValidationError(Exception):
    """Raised when template validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Template validation failed with {len(errors)} error(s)")


@dataclass
class ValidationResult:
    """Result of validation, with errors and warnings."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise TemplateValidationError(self.errors)


@dataclass
class ValueCheck:
    valid: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> ValueCheck:
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> ValueCheck:
        return cls(valid=False, error=error)


# =============================================================================
# Object values
# =============================================================================

def validate_object_value(value: Any, definition: ObjectDefinition) -> ValueCheck:
    """Check a value against its definition's type and bounds."""
    if definition.type in NUMERIC_OBJECT_TYPES:
        if not is_number(value) or value != value:
            return ValueCheck.fail("Value must be a number")
        return _check_bounds(value, definition, "Value")

    if definition.type == ObjectType.BOOLEAN:
        if not isinstance(value, bool):
            return ValueCheck.fail("Value must be a boolean")
        return ValueCheck.ok()

    if definition.type == ObjectType.STRING:
        if not isinstance(value, str):
            return ValueCheck.fail("Value must be a string")
        if definition.options and value not in definition.options:
            return ValueCheck.fail(f"Value must be one of: {', '.join(definition.options)}")
        return ValueCheck.ok()

    if definition.type == ObjectType.SET:
        return _validate_set_value(value, definition)

    return ValueCheck.ok()


def _check_bounds(value: float, definition: ObjectDefinition, label: str) -> ValueCheck:
    if definition.min is not None and value < definition.min:
        return ValueCheck.fail(f"{label} must be at least {definition.min:g}")
    if definition.max is not None and value > definition.max:
        return ValueCheck.fail(f"{label} must be at most {definition.max:g}")
    return ValueCheck.ok()


def _validate_set_value(value: Any, definition: ObjectDefinition) -> ValueCheck:
    if definition.set_type is None:
        return ValueCheck.fail("Set object must have a set type defined")

    if definition.set_type == SetType.IDENTICAL:
        if not is_number(value) or value != value:
            return ValueCheck.fail("Identical set value must be a number (count)")
        if value < 0:
            return ValueCheck.fail("Set count cannot be negative")
        return _check_bounds(value, definition, "Set count")

    if not isinstance(value, list):
        return ValueCheck.fail("Elements set value must be a list")

    for element in value:
        if isinstance(element, SetElementValue):
            element_id, quantity = element.element_object_definition_id, element.quantity
        elif isinstance(element, Mapping):
            element_id, quantity = element.get("element_object_definition_id"), element.get("quantity")
        else:
            return ValueCheck.fail("Set element must be an element/quantity pair")

        if not element_id:
            return ValueCheck.fail("Set element must have an element object definition id")
        if element_id not in definition.set_elements:
            return ValueCheck.fail(f"Set element {element_id} is not defined in set")
        if not is_number(quantity) or quantity != quantity:
            return ValueCheck.fail("Set element quantity must be a number")
        if quantity < 0:
            return ValueCheck.fail("Set element quantity cannot be negative")

    return ValueCheck.ok()


# =============================================================================
# Templates
# =============================================================================

def validate_template(state: AppState, session_id: str) -> ValidationResult:
    """
    Validate the categories, objects and rules a session scores with.

    Returns ValidationResult with errors and warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []

    session = state.get_session(session_id)
    if session is None:
        return ValidationResult(valid=False, errors=[f"Unknown session '{session_id}'"])

    categories = state.session_categories(session_id)
    template = state.get_template(session_id)
    if template is None:
        warnings.append("Session has no template - objects and rules are ignored")

    known_names = _known_reference_names(categories, template)

    errors.extend(_validate_category_forest(categories))

    for category in categories:
        if category.formula:
            _check_formula(f"Category '{category.name}'", category.formula, known_names, errors, warnings)

    if template is not None:
        definition_ids = {d.id for d in template.object_definitions}
        for definition in template.object_definitions:
            errors.extend(_validate_object_definition(definition, definition_ids))
            label = f"Object '{definition.name}'"
            if definition.calculation:
                _check_formula(f"{label} calculation", definition.calculation, known_names, errors, warnings)
            if definition.score_impact:
                _check_formula(f"{label} score impact", definition.score_impact, known_names, errors, warnings)

    category_ids = {c.id for c in categories}
    for rule in state.session_rules(session_id):
        target = rule.action.target_category_id
        if target and target not in category_ids:
            warnings.append(f"Rule '{rule.name}' targets unknown category '{target}'")
        subject = rule.condition.category_id
        if subject and subject not in category_ids and subject.lower() not in known_names:
            warnings.append(f"Rule '{rule.name}' checks unknown category or object '{subject}'")

    return ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings)


def _known_reference_names(
    categories: list[CategoryDefinition],
    template: GameTemplate | None,
) -> set[str]:
    """Lower-cased names and ids a formula reference may resolve to."""
    names = {TOTAL_REFERENCE}
    for category in categories:
        names.add(category.name.lower())
        names.add(category.id.lower())
    if template is not None:
        for definition in template.object_definitions:
            names.add(definition.name.lower())
            names.add(definition.id.lower())
    return names


def _check_formula(
    label: str,
    formula: str,
    known_names: set[str],
    errors: list[str],
    warnings: list[str],
) -> None:
    result = validate_formula(formula)
    if not result.valid:
        errors.append(f"{label}: {result.error}")
        return
    for name in sorted(extract_references(formula)):
        if name.lower() not in known_names:
            warnings.append(f"{label} references unknown '{name}' (resolves to 0)")


def _validate_category_forest(categories: list[CategoryDefinition]) -> list[str]:
    """Dangling parents and cycles in the category forest."""
    errors = []
    by_id = {c.id: c for c in categories}
    reported: set[frozenset[str]] = set()

    for category in categories:
        parent_id = category.parent_category_id
        if parent_id and parent_id not in by_id:
            errors.append(f"Category '{category.name}' has unknown parent '{parent_id}'")
            continue

        path = [category.id]
        current = category
        while current.parent_category_id and current.parent_category_id in by_id:
            parent_id = current.parent_category_id
            if parent_id in path:
                cycle = path[path.index(parent_id):]
                key = frozenset(cycle)
                if key not in reported:
                    reported.add(key)
                    names = [by_id[cid].name for cid in cycle] + [by_id[parent_id].name]
                    errors.append(f"Category cycle: {' -> '.join(names)}")
                break
            path.append(parent_id)
            current = by_id[parent_id]

    return errors


def _validate_object_definition(definition: ObjectDefinition, definition_ids: set[str]) -> list[str]:
    errors = []
    if not definition.id:
        errors.append("Object definition has empty ID")
    if not definition.name:
        errors.append(f"Object definition '{definition.id}' has empty name")
    if definition.type == ObjectType.SET and definition.set_type is None:
        errors.append(f"Set object '{definition.name}' has no set type")

    ownership = definition.ownership
    if isinstance(ownership, ObjectOwnership) and ownership.object_id not in definition_ids:
        errors.append(
            f"Object '{definition.name}' ownership references unknown object '{ownership.object_id}'"
        )
    window = definition.active_window
    if isinstance(window, ObjectWindow) and window.object_id not in definition_ids:
        errors.append(
            f"Object '{definition.name}' active window references unknown object '{window.object_id}'"
        )
    return errors
