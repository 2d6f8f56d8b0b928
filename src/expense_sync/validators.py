"""
Input validation functions for expense records.

Provides validation for amounts, currency codes and category deletion so
callers can reject bad input before it reaches the local snapshot.
"""

import math
import re
from typing import Iterable

from .sync.models import Expense

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Amount")
        reason: Description of validation failure (e.g., "must be positive")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_amount(amount: float) -> tuple[bool, str]:
    """
    Validate an expense amount.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Must be a finite number
        - Must be greater than zero
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return (False, format_validation_error("Amount", "must be a number"))

    if not math.isfinite(amount):
        return (False, format_validation_error("Amount", "must be finite"))

    if amount <= 0:
        return (
            False,
            format_validation_error("Amount", "must be greater than zero"),
        )

    return (True, "")


def validate_currency_code(code: str) -> tuple[bool, str]:
    """
    Validate an ISO 4217 style currency code (three uppercase letters).

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not code or not code.strip():
        return (False, format_validation_error("Currency", "cannot be empty"))

    if not _CURRENCY_RE.match(code):
        return (
            False,
            format_validation_error(
                "Currency", f"'{code}' is not a three-letter code"
            ),
        )

    return (True, "")


def validate_category_deletion(
    category_id: str, expenses: Iterable[Expense]
) -> tuple[bool, str]:
    """
    Check that no active expense references a category.

    Tombstoned expenses do not count: they are already deleted and only
    linger until the deletion is synced.

    Returns:
        Tuple of (is_valid, error_message).
    """
    in_use = sum(
        1
        for e in expenses
        if e.category_id == category_id and not e.is_deleted
    )
    if in_use:
        return (
            False,
            format_validation_error(
                "Category",
                f"is used by {in_use} expense(s) and cannot be deleted",
            ),
        )
    return (True, "")
