"""Extraction field validation."""
from income_verification.services.validation.field_validator import (
    FieldValidator,
    ValidationVerdict,
    get_field_validator,
)

__all__ = ["FieldValidator", "ValidationVerdict", "get_field_validator"]
