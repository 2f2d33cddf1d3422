from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from budgetwise.errors import DomainStateError, NotFoundError, ValidationError
from budgetwise.events import TransactionCommitted
from budgetwise.notifier import Notifier, notify_budget_alert
from budgetwise.stores import Stores

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class BudgetEvaluation:
    spent: Decimal
    remaining: Decimal
    spent_percentage: int
    is_exceeded: bool
    should_alert: bool
    status: str


@dataclass(frozen=True)
class BudgetSnapshot:
    budget: dict
    evaluation: BudgetEvaluation


@dataclass(frozen=True)
class BudgetAlert:
    budget_id: int
    budget_name: str
    category_id: int
    spent: Decimal
    limit: Decimal
    percentage: int
    is_exceeded: bool


@dataclass(frozen=True)
class BudgetSummary:
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: int
    active_count: int
    exceeded_count: int
    near_limit_count: int
    budgets: list[BudgetSnapshot]


def evaluate_budget(
    limit: Decimal,
    spent: Decimal,
    alert_threshold: Decimal,
    alert_sent: bool,
) -> BudgetEvaluation:
    limit = _coerce_amount(limit)
    spent = _coerce_amount(spent)
    threshold = _coerce_amount(alert_threshold)

    spent_percentage = _percentage(spent, limit)
    is_exceeded = spent > limit
    if is_exceeded:
        status = "over"
    elif spent_percentage >= threshold:
        status = "near_limit"
    else:
        status = "ok"

    return BudgetEvaluation(
        spent=spent,
        remaining=max(ZERO, limit - spent),
        spent_percentage=spent_percentage,
        is_exceeded=is_exceeded,
        should_alert=spent_percentage >= threshold and not alert_sent,
        status=status,
    )


def snapshot(budget: dict) -> BudgetSnapshot:
    return BudgetSnapshot(
        budget=budget,
        evaluation=evaluate_budget(
            budget["amount"],
            budget["spent"],
            budget["alert_threshold"],
            budget["alert_sent"],
        ),
    )


def validate_window(start_date: date, end_date: date) -> None:
    if start_date >= end_date:
        raise ValidationError("End date must be after start date.", field="end_date")


def spent_filter(budget: dict) -> dict:
    return {
        "user_id": budget["user_id"],
        "category_id": budget["category_id"],
        "type": "expense",
        "status": "completed",
        "is_deleted": False,
        "date": {"$gte": budget["start_date"], "$lte": budget["end_date"]},
    }


def load_budget(stores: Stores, budget_id: int, user_id: Optional[int] = None) -> dict:
    filters: dict = {"id": budget_id}
    if user_id is not None:
        filters["user_id"] = user_id
    budget = stores.budgets.find_one(filters)
    if budget is None:
        raise NotFoundError("Budget not found.")
    return budget


def recompute(
    stores: Stores,
    budget_id: int,
    now: datetime,
    user_id: Optional[int] = None,
) -> BudgetSnapshot:
    return recompute_record(stores, load_budget(stores, budget_id, user_id), now)


def recompute_record(stores: Stores, budget: dict, now: datetime) -> BudgetSnapshot:
    spent = stores.transactions.aggregate_sum(spent_filter(budget), "amount")
    updated = stores.budgets.update(
        budget["id"], {"spent": spent, "spent_recomputed_at": now}
    )
    if updated is None:
        raise NotFoundError("Budget not found.")
    logger.debug("Recomputed budget %s: spent=%s", budget["id"], spent)
    return snapshot(updated)


def active_budgets(
    stores: Stores,
    user_id: int,
    today: date,
    category_ids: Optional[Iterable[int]] = None,
) -> list[dict]:
    filters: dict = {
        "user_id": user_id,
        "is_active": True,
        "start_date": {"$lte": today},
        "end_date": {"$gte": today},
    }
    if category_ids is not None:
        filters["category_id"] = {"$in": list(category_ids)}
    return stores.budgets.find(filters, order_by=("id",))


def recompute_for_event(
    stores: Stores, event: TransactionCommitted, now: datetime
) -> list[BudgetSnapshot]:
    affected = active_budgets(stores, event.user_id, now.date(), event.category_ids)
    return [recompute_record(stores, budget, now) for budget in affected]


def find_overlapping(
    stores: Stores,
    user_id: int,
    category_id: int,
    start_date: date,
    end_date: date,
    exclude_id: Optional[int] = None,
) -> Optional[dict]:
    filters: dict = {
        "user_id": user_id,
        "category_id": category_id,
        "is_active": True,
        "start_date": {"$lte": end_date},
        "end_date": {"$gte": start_date},
    }
    if exclude_id is not None:
        filters["id"] = {"$ne": exclude_id}
    return stores.budgets.find_one(filters)


def ensure_no_overlap(
    stores: Stores,
    user_id: int,
    category_id: int,
    start_date: date,
    end_date: date,
    exclude_id: Optional[int] = None,
) -> None:
    if find_overlapping(stores, user_id, category_id, start_date, end_date, exclude_id):
        raise DomainStateError(
            "An active budget already exists for this category in the given period."
        )


def renew(
    stores: Stores,
    budget_id: int,
    now: datetime,
    user_id: Optional[int] = None,
) -> BudgetSnapshot:
    """Start a new window of the same length beginning today.

    Auto-renewing budgets move their own window and reset their counters.
    Any other budget is deactivated and replaced by a fresh record.
    """
    budget = load_budget(stores, budget_id, user_id)
    today = now.date()
    duration = budget["end_date"] - budget["start_date"]

    if budget["auto_renew"]:
        updated = stores.budgets.update(
            budget["id"],
            {
                "start_date": today,
                "end_date": today + duration,
                "spent": ZERO,
                "spent_recomputed_at": None,
                "alert_sent": False,
                "updated_at": now,
            },
        )
        logger.info("Renewed budget %s in place", budget["id"])
        return snapshot(updated)

    replacement = stores.budgets.insert(
        {
            "user_id": budget["user_id"],
            "name": budget["name"],
            "amount": budget["amount"],
            "category_id": budget["category_id"],
            "period": budget["period"],
            "start_date": today,
            "end_date": today + duration,
            "alert_threshold": budget["alert_threshold"],
            "auto_renew": budget["auto_renew"],
            "notes": budget["notes"],
            "color": budget["color"],
            "spent": ZERO,
            "alert_sent": False,
        }
    )
    stores.budgets.update(budget["id"], {"is_active": False, "updated_at": now})
    logger.info("Replaced budget %s with %s", budget["id"], replacement["id"])
    return recompute_record(stores, replacement, now)


def collect_alerts(
    stores: Stores,
    user_id: int,
    now: datetime,
    notifier: Notifier,
) -> list[BudgetAlert]:
    today = now.date()
    candidates = stores.budgets.find(
        {
            "user_id": user_id,
            "is_active": True,
            "alert_sent": False,
            "start_date": {"$lte": today},
            "end_date": {"$gte": today},
        },
        order_by=("id",),
    )
    alerts: list[BudgetAlert] = []
    for budget in candidates:
        current = recompute_record(stores, budget, now)
        evaluation = current.evaluation
        if not evaluation.should_alert:
            continue
        alert = BudgetAlert(
            budget_id=budget["id"],
            budget_name=budget["name"],
            category_id=budget["category_id"],
            spent=evaluation.spent,
            limit=_coerce_amount(budget["amount"]),
            percentage=evaluation.spent_percentage,
            is_exceeded=evaluation.is_exceeded,
        )
        notify_budget_alert(
            notifier,
            user_id=user_id,
            budget_name=alert.budget_name,
            spent=alert.spent,
            limit=alert.limit,
            percentage=alert.percentage,
        )
        stores.budgets.update(budget["id"], {"alert_sent": True})
        alerts.append(alert)
    return alerts


def summarize(stores: Stores, user_id: int, now: datetime) -> BudgetSummary:
    snapshots = [
        recompute_record(stores, budget, now)
        for budget in active_budgets(stores, user_id, now.date())
    ]
    total_budget = sum((_coerce_amount(s.budget["amount"]) for s in snapshots), ZERO)
    total_spent = sum((s.evaluation.spent for s in snapshots), ZERO)
    exceeded = sum(1 for s in snapshots if s.evaluation.is_exceeded)
    near_limit = sum(1 for s in snapshots if s.evaluation.status == "near_limit")
    return BudgetSummary(
        total_budget=total_budget,
        total_spent=total_spent,
        total_remaining=max(ZERO, total_budget - total_spent),
        overall_percentage=_percentage(total_spent, total_budget),
        active_count=len(snapshots),
        exceeded_count=exceeded,
        near_limit_count=near_limit,
        budgets=snapshots,
    )


def _percentage(part: Decimal, whole: Decimal) -> int:
    if whole <= ZERO:
        return 0
    return int((part / whole * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
