"""
Shared validation helpers for OpsMemory services.
"""

from __future__ import annotations

from typing import Optional

from core.errors import ValidationIssue
from core.models import FACT_SOURCES


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_page(page: int, page_size: int, max_page_size: int) -> None:
    if page < 1:
        raise ValidationIssue("page must be 1 or greater", field="page", error_type="out_of_range")
    validate_limit(page_size, "page_size", max_page_size)


def validate_number(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")


def validate_source(value: str, field: str = "source") -> None:
    if value not in FACT_SOURCES:
        raise ValidationIssue(
            f"{field} must be one of {sorted(FACT_SOURCES)}",
            field=field,
            error_type="invalid_choice",
        )


def validate_thread_id(value: int, field: str = "thread_id") -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value < 0:
        raise ValidationIssue(f"{field} must not be negative", field=field, error_type="out_of_range")
