"""Create, edit and delete records on the device.

Every local mutation goes through these helpers so the sync envelope stays
consistent:

* New records get ``updated_at = now`` and no ``last_synced_at``, which
  makes them pending.
* Edits bump ``updated_at`` strictly, even if the clock has not moved
  since the previous write.
* Expenses are deleted by tombstoning; categories are removed locally and
  only when no active expense references them.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, TypeVar

from .core.clock import Clock
from .errors import CategoryInUseError
from .sync.models import Category, Expense, SyncEnvelope, UserSettings
from .validators import (
    validate_amount,
    validate_category_deletion,
    validate_currency_code,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncEnvelope)

# Envelope fields a caller may not change through touch().
_PROTECTED_FIELDS = frozenset(
    {"id", "updated_at", "last_synced_at", "is_deleted"}
)


def new_id() -> str:
    """Return a fresh random record id."""
    return str(uuid.uuid4())


def next_timestamp(record: SyncEnvelope, clock: Clock) -> int:
    """Return a write timestamp strictly greater than ``record.updated_at``."""
    return max(clock(), record.updated_at + 1)


def touch(record: R, clock: Clock, **changes: Any) -> R:
    """Return *record* with *changes* applied and ``updated_at`` bumped.

    Amounts and currency codes get the same checks as on creation; the
    rest is validated by the model.

    Raises:
        ValueError: If a change targets an envelope field, or the result
            fails validation.
    """
    protected = _PROTECTED_FIELDS.intersection(changes)
    if protected:
        raise ValueError(
            f"Cannot edit envelope field(s) {sorted(protected)} directly"
        )
    if "amount" in changes:
        _check(validate_amount(changes["amount"]))
    for field in ("currency", "original_currency", "default_currency"):
        if changes.get(field) is not None:
            _check(validate_currency_code(changes[field]))
    data = record.model_dump()
    data.update(changes)
    data["updated_at"] = next_timestamp(record, clock)
    return type(record).model_validate(data)


def _check(result: tuple[bool, str]) -> None:
    ok, message = result
    if not ok:
        raise ValueError(message)


def new_expense(
    clock: Clock,
    *,
    amount: float,
    currency: str,
    category_id: str,
    description: str = "",
    date: int | None = None,
    user_id: str | None = None,
    original_amount: float | None = None,
    original_currency: str | None = None,
    exchange_rate: float | None = None,
) -> Expense:
    """Create a pending expense.

    Args:
        clock: Timestamp source.
        amount: Amount in *currency*.  Must be positive.
        currency: Three-letter currency code.
        category_id: Id of the expense's category.
        description: Free text.
        date: When the expense happened; defaults to now.
        user_id: Owner, if known.
        original_amount: Amount as entered, for converted expenses.
        original_currency: Currency *original_amount* was entered in.
        exchange_rate: Rate used for the conversion.

    Raises:
        ValueError: If the amount or currency is invalid.
    """
    _check(validate_amount(amount))
    _check(validate_currency_code(currency))
    if original_currency is not None:
        _check(validate_currency_code(original_currency))
    now = clock()
    return Expense(
        id=new_id(),
        user_id=user_id,
        amount=amount,
        original_amount=original_amount,
        original_currency=original_currency,
        exchange_rate=exchange_rate,
        currency=currency,
        description=description,
        category_id=category_id,
        date=now if date is None else date,
        created_at=now,
        updated_at=now,
    )


def new_category(
    clock: Clock,
    *,
    name: str,
    color: str,
    icon: str,
    user_id: str | None = None,
) -> Category:
    """Create a pending, user-defined category."""
    if not name or not name.strip():
        raise ValueError("Category name cannot be empty")
    now = clock()
    return Category(
        id=new_id(),
        user_id=user_id,
        name=name.strip(),
        color=color,
        icon=icon,
        is_default=False,
        created_at=now,
        updated_at=now,
    )


def tombstone_expense(expense: Expense, clock: Clock) -> Expense:
    """Mark *expense* deleted so the deletion syncs.

    Raises:
        ValueError: If the expense is already tombstoned.
    """
    if expense.is_deleted:
        raise ValueError(f"Expense '{expense.id}' is already deleted")
    return expense.model_copy(
        update={
            "is_deleted": True,
            "updated_at": next_timestamp(expense, clock),
        }
    )


def update_settings(
    settings: UserSettings, clock: Clock, **changes: Any
) -> UserSettings:
    """Apply *changes* to the settings singleton.

    Raises:
        ValueError: If ``user_id`` is changed or a value is out of range.
    """
    if "user_id" in changes and changes["user_id"] != settings.user_id:
        raise ValueError("Settings cannot be moved to another user")
    return touch(settings, clock, **changes)


def delete_category(
    category_id: str,
    categories: Iterable[Category],
    expenses: Iterable[Expense],
) -> list[Category]:
    """Remove a category from the local snapshot.

    Category deletions do not sync; the category only disappears from this
    device's snapshot.

    Returns:
        *categories* without the deleted one.

    Raises:
        CategoryInUseError: If an active expense uses the category.
        KeyError: If no category has *category_id*.
    """
    categories = list(categories)
    if not any(c.id == category_id for c in categories):
        raise KeyError(category_id)
    expenses = list(expenses)
    ok, _ = validate_category_deletion(category_id, expenses)
    if not ok:
        in_use = sum(
            1
            for e in expenses
            if e.category_id == category_id and not e.is_deleted
        )
        raise CategoryInUseError(category_id, in_use)
    logger.info("Deleting category %s locally", category_id)
    return [c for c in categories if c.id != category_id]
