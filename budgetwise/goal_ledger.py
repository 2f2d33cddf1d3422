from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from budgetwise.errors import DomainStateError, NotFoundError, ValidationError
from budgetwise.notifier import Notifier, notify_goal_reminder
from budgetwise.schedule_dates import monthly_savings_target
from budgetwise.stores import Stores

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
GOAL_STATUSES = {"active", "completed", "paused", "cancelled"}
GOAL_PRIORITIES = {"low", "medium", "high"}
STARTING_BALANCE_NOTE = "Starting balance"


@dataclass(frozen=True)
class Contribution:
    id: Optional[int]
    amount: Decimal
    date: datetime
    note: Optional[str] = None
    is_automatic: bool = False


@dataclass(frozen=True)
class Reminder:
    id: Optional[int]
    message: str
    date: datetime
    sent: bool = False


@dataclass(frozen=True)
class Goal:
    id: Optional[int]
    user_id: int
    title: str
    target_amount: Decimal
    target_date: date
    start_date: date
    status: str = "active"
    description: Optional[str] = None
    priority: str = "medium"
    category_id: Optional[int] = None
    contributions: tuple[Contribution, ...] = ()
    reminders: tuple[Reminder, ...] = ()
    last_contribution: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def current_amount(self) -> Decimal:
        return current_amount(self.contributions)


@dataclass(frozen=True)
class GoalProgress:
    progress_percentage: int
    remaining_amount: Decimal
    days_remaining: int
    monthly_target: Decimal
    is_completed: bool


def current_amount(contributions) -> Decimal:
    return sum((_coerce_amount(c.amount) for c in contributions), ZERO)


def add_contribution(
    goal: Goal,
    amount: Decimal,
    note: Optional[str],
    is_automatic: bool,
    now: datetime,
) -> tuple[Goal, Contribution]:
    amount = _coerce_amount(amount)
    if amount <= ZERO:
        raise ValidationError("Contribution amount must be greater than zero.", field="amount")
    if goal.status != "active":
        raise DomainStateError("Goal must be active to receive contributions.")

    contribution = Contribution(
        id=None, amount=amount, date=now, note=note, is_automatic=is_automatic
    )
    updated = replace(
        goal,
        contributions=goal.contributions + (contribution,),
        last_contribution=now,
    )
    if updated.current_amount >= _coerce_amount(updated.target_amount):
        updated = replace(updated, status="completed", completed_at=now)
    return updated, contribution


def remove_contribution(goal: Goal, contribution_id: int) -> tuple[Goal, Contribution]:
    removed = next((c for c in goal.contributions if c.id == contribution_id), None)
    if removed is None:
        raise NotFoundError("Contribution not found.")

    updated = replace(
        goal,
        contributions=tuple(c for c in goal.contributions if c.id != contribution_id),
    )
    if updated.status == "completed" and updated.current_amount < _coerce_amount(
        updated.target_amount
    ):
        updated = replace(updated, status="active", completed_at=None)
    return updated, removed


def add_reminder(
    goal: Goal, message: str, when: datetime, now: datetime
) -> tuple[Goal, Reminder]:
    message = (message or "").strip()
    if not message:
        raise ValidationError("Reminder message required.", field="message")
    if when <= now:
        raise DomainStateError("Reminder date must be in the future.")
    reminder = Reminder(id=None, message=message, date=when)
    return replace(goal, reminders=goal.reminders + (reminder,)), reminder


def remove_reminder(goal: Goal, reminder_id: int) -> tuple[Goal, Reminder]:
    removed = next((r for r in goal.reminders if r.id == reminder_id), None)
    if removed is None:
        raise NotFoundError("Reminder not found.")
    return replace(goal, reminders=tuple(r for r in goal.reminders if r.id != reminder_id)), removed


def reconcile_status(goal: Goal, now: datetime) -> Goal:
    reached = goal.current_amount >= _coerce_amount(goal.target_amount)
    if goal.status == "active" and reached:
        return replace(goal, status="completed", completed_at=now)
    if goal.status == "completed" and not reached:
        return replace(goal, status="active", completed_at=None)
    return goal


def goal_progress(goal: Goal, today: date) -> GoalProgress:
    target = _coerce_amount(goal.target_amount)
    saved = goal.current_amount
    remaining = max(ZERO, target - saved)
    is_completed = saved >= target or goal.status == "completed"

    if target > ZERO:
        progress = int((saved / target * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        progress = 0

    if is_completed:
        return GoalProgress(
            progress_percentage=progress,
            remaining_amount=remaining,
            days_remaining=0,
            monthly_target=ZERO,
            is_completed=True,
        )
    return GoalProgress(
        progress_percentage=progress,
        remaining_amount=remaining,
        days_remaining=max(0, (goal.target_date - today).days),
        monthly_target=monthly_savings_target(remaining, today, goal.target_date),
        is_completed=False,
    )


def validate_goal_fields(
    target_amount: Decimal, start_date: date, target_date: date
) -> None:
    if _coerce_amount(target_amount) <= ZERO:
        raise ValidationError("Target amount must be greater than zero.", field="target_amount")
    if target_date <= start_date:
        raise ValidationError("Target date must be after the start date.", field="target_date")


def load_goal(stores: Stores, goal_id: int, user_id: Optional[int] = None) -> Goal:
    filters: dict = {"id": goal_id}
    if user_id is not None:
        filters["user_id"] = user_id
    record = stores.goals.find_one(filters)
    if record is None:
        raise NotFoundError("Goal not found.")
    contributions = stores.contributions.find({"goal_id": goal_id}, order_by=("date", "id"))
    reminders = stores.reminders.find({"goal_id": goal_id}, order_by=("date", "id"))
    return Goal(
        id=record["id"],
        user_id=record["user_id"],
        title=record["title"],
        target_amount=_coerce_amount(record["target_amount"]),
        target_date=record["target_date"],
        start_date=record["start_date"],
        status=record["status"],
        description=record["description"],
        priority=record["priority"],
        category_id=record["category_id"],
        contributions=tuple(
            Contribution(
                id=row["id"],
                amount=_coerce_amount(row["amount"]),
                date=row["date"],
                note=row["note"],
                is_automatic=row["is_automatic"],
            )
            for row in contributions
        ),
        reminders=tuple(
            Reminder(id=row["id"], message=row["message"], date=row["date"], sent=row["sent"])
            for row in reminders
        ),
        last_contribution=record["last_contribution"],
        completed_at=record["completed_at"],
        created_at=record["created_at"],
    )


def create_goal(
    stores: Stores,
    user_id: int,
    title: str,
    target_amount: Decimal,
    target_date: date,
    now: datetime,
    starting_amount: Decimal = ZERO,
    description: Optional[str] = None,
    priority: str = "medium",
    category_id: Optional[int] = None,
) -> Goal:
    start_date = now.date()
    validate_goal_fields(target_amount, start_date, target_date)
    record = stores.goals.insert(
        {
            "user_id": user_id,
            "title": title,
            "description": description,
            "target_amount": target_amount,
            "current_amount": ZERO,
            "current_amount_recomputed_at": now,
            "target_date": target_date,
            "start_date": start_date,
            "category_id": category_id,
            "priority": priority,
            "status": "active",
        }
    )
    if _coerce_amount(starting_amount) > ZERO:
        return contribute_to_goal(
            stores, record["id"], starting_amount, STARTING_BALANCE_NOTE, now
        )
    return load_goal(stores, record["id"])


def update_goal(
    stores: Stores,
    goal_id: int,
    patch: dict,
    now: datetime,
    user_id: Optional[int] = None,
) -> Goal:
    goal = load_goal(stores, goal_id, user_id)
    status = patch.get("status", goal.status)
    if status not in GOAL_STATUSES:
        raise ValidationError("Invalid goal status.", field="status")
    updated = replace(
        goal,
        title=patch.get("title", goal.title),
        description=patch.get("description", goal.description),
        target_amount=_coerce_amount(patch.get("target_amount", goal.target_amount)),
        target_date=patch.get("target_date", goal.target_date),
        priority=patch.get("priority", goal.priority),
        category_id=patch.get("category_id", goal.category_id),
        status=status,
    )
    if status == "completed" and goal.status != "completed":
        if updated.current_amount < updated.target_amount:
            raise DomainStateError("Goal cannot be completed before reaching its target.")
        updated = replace(updated, completed_at=now)
    elif status != "completed":
        updated = replace(updated, completed_at=None)
    validate_goal_fields(updated.target_amount, updated.start_date, updated.target_date)
    updated = reconcile_status(updated, now)

    stores.goals.update(
        goal.id,
        {
            "title": updated.title,
            "description": updated.description,
            "target_amount": updated.target_amount,
            "target_date": updated.target_date,
            "priority": updated.priority,
            "category_id": updated.category_id,
            **_state_patch(updated, now),
        },
    )
    return load_goal(stores, goal.id)


def delete_goal(stores: Stores, goal_id: int, user_id: Optional[int] = None) -> None:
    goal = load_goal(stores, goal_id, user_id)
    stores.contributions.delete({"goal_id": goal.id})
    stores.reminders.delete({"goal_id": goal.id})
    stores.goals.delete({"id": goal.id})


def contribute_to_goal(
    stores: Stores,
    goal_id: int,
    amount: Decimal,
    note: Optional[str],
    now: datetime,
    user_id: Optional[int] = None,
    is_automatic: bool = False,
) -> Goal:
    goal = load_goal(stores, goal_id, user_id)
    updated, contribution = add_contribution(goal, amount, note, is_automatic, now)
    stores.contributions.insert(
        {
            "goal_id": goal.id,
            "user_id": goal.user_id,
            "amount": contribution.amount,
            "date": contribution.date,
            "note": contribution.note,
            "is_automatic": contribution.is_automatic,
        }
    )
    stores.goals.update(goal.id, _state_patch(updated, now))
    if updated.status == "completed" and goal.status != "completed":
        logger.info("Goal %s reached its target", goal.id)
    return load_goal(stores, goal.id)


def remove_goal_contribution(
    stores: Stores,
    goal_id: int,
    contribution_id: int,
    now: datetime,
    user_id: Optional[int] = None,
) -> Goal:
    goal = load_goal(stores, goal_id, user_id)
    updated, removed = remove_contribution(goal, contribution_id)
    stores.contributions.delete({"id": removed.id, "goal_id": goal.id})
    stores.goals.update(goal.id, _state_patch(updated, now))
    return load_goal(stores, goal.id)


def schedule_reminder(
    stores: Stores,
    goal_id: int,
    message: str,
    when: datetime,
    now: datetime,
    user_id: Optional[int] = None,
) -> Goal:
    goal = load_goal(stores, goal_id, user_id)
    _, reminder = add_reminder(goal, message, when, now)
    stores.reminders.insert(
        {
            "goal_id": goal.id,
            "user_id": goal.user_id,
            "message": reminder.message,
            "date": reminder.date,
            "sent": False,
        }
    )
    return load_goal(stores, goal.id)


def delete_reminder(
    stores: Stores,
    goal_id: int,
    reminder_id: int,
    user_id: Optional[int] = None,
) -> Goal:
    goal = load_goal(stores, goal_id, user_id)
    _, removed = remove_reminder(goal, reminder_id)
    stores.reminders.delete({"id": removed.id, "goal_id": goal.id})
    return load_goal(stores, goal.id)


def dispatch_due_reminders(
    stores: Stores,
    now: datetime,
    notifier: Notifier,
    user_id: Optional[int] = None,
) -> int:
    filters: dict = {"sent": False, "date": {"$lte": now}}
    if user_id is not None:
        filters["user_id"] = user_id
    sent = 0
    for reminder in stores.reminders.find(filters, order_by=("date", "id")):
        goal = stores.goals.find_one({"id": reminder["goal_id"]})
        if goal is None or goal["status"] != "active":
            continue
        notify_goal_reminder(
            notifier,
            user_id=goal["user_id"],
            goal_title=goal["title"],
            message=reminder["message"],
        )
        stores.reminders.update(reminder["id"], {"sent": True})
        sent += 1
    return sent


def _state_patch(goal: Goal, now: datetime) -> dict:
    return {
        "current_amount": goal.current_amount,
        "current_amount_recomputed_at": now,
        "status": goal.status,
        "completed_at": goal.completed_at,
        "last_contribution": goal.last_contribution,
        "updated_at": now,
    }


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
