from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

BUDGET_RELEVANT_FIELDS = ("type", "category_id", "date", "amount", "status", "is_deleted")


@dataclass(frozen=True)
class TransactionCommitted:
    user_id: int
    category_ids: tuple[int, ...]


def commit_event(
    before: Optional[Mapping[str, Any]],
    after: Optional[Mapping[str, Any]],
) -> Optional[TransactionCommitted]:
    """Describe which budgets a transaction write may have affected.

    Either side counts when it is an expense with a category, so moving a
    transaction from income to expense (or back) touches the matching
    budgets. Returns ``None`` when no budget can have changed.
    """
    if before is None and after is None:
        return None
    if before is not None and after is not None:
        if all(before.get(name) == after.get(name) for name in BUDGET_RELEVANT_FIELDS):
            return None

    category_ids: list[int] = []
    for side in (before, after):
        if side is None or side.get("type") != "expense":
            continue
        category_id = side.get("category_id")
        if category_id is not None and category_id not in category_ids:
            category_ids.append(category_id)
    if not category_ids:
        return None

    owner = after if after is not None else before
    return TransactionCommitted(user_id=owner["user_id"], category_ids=tuple(category_ids))
