"""Template schema - validation of session templates and object values."""

from .validation import (
    ValueCheck,
    ValidationResult,
    TemplateValidationError,
    validate_object_value,
    validate_template,
)

__all__ = [
    "ValueCheck",
    "ValidationResult",
    "TemplateValidationError",
    "validate_object_value",
    "validate_template",
]
