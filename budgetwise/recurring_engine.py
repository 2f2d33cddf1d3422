from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.engine import Engine

from budgetwise import budget_engine
from budgetwise.config import get_recurring_suffix
from budgetwise.errors import BudgetwiseError, NotFoundError, ValidationError
from budgetwise.events import TransactionCommitted, commit_event
from budgetwise.schedule_dates import compute_next_occurrence, first_occurrence
from budgetwise.stores import Stores

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = {"income", "expense"}
DESCRIPTION_MAX_LENGTH = 100
SCHEDULE_FIELDS = (
    "frequency",
    "day_of_week",
    "day_of_month",
    "day_of_year",
    "start_date",
)


@dataclass(frozen=True)
class RecurringDefinition:
    id: Optional[int]
    user_id: int
    type: str
    amount: Decimal
    category_id: Optional[int]
    description: str
    frequency: str
    start_date: date
    next_due: date
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    day_of_year: Optional[str] = None
    end_date: Optional[date] = None
    is_active: bool = True
    last_execution: Optional[date] = None
    execution_count: int = 0
    max_executions: Optional[int] = None

    @classmethod
    def from_record(cls, record: dict) -> "RecurringDefinition":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            type=record["type"],
            amount=_coerce_amount(record["amount"]),
            category_id=record["category_id"],
            description=record["description"],
            frequency=record["frequency"],
            start_date=record["start_date"],
            next_due=record["next_due"],
            day_of_week=record["day_of_week"],
            day_of_month=record["day_of_month"],
            day_of_year=record["day_of_year"],
            end_date=record["end_date"],
            is_active=record["is_active"],
            last_execution=record["last_execution"],
            execution_count=record["execution_count"] or 0,
            max_executions=record["max_executions"],
        )

    def state_patch(self) -> dict:
        return {
            "next_due": self.next_due,
            "last_execution": self.last_execution,
            "execution_count": self.execution_count,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    definition: RecurringDefinition
    transaction: dict
    created: bool
    event: Optional[TransactionCommitted]


@dataclass(frozen=True)
class ExecutionFailure:
    definition_id: Optional[int]
    reason: str


@dataclass(frozen=True)
class RunResult:
    materialized: int
    transactions: list[dict]
    failures: list[ExecutionFailure]
    reason: str


def next_occurrence(definition: RecurringDefinition, current: date) -> date:
    return compute_next_occurrence(
        current,
        definition.frequency,
        day_of_week=definition.day_of_week,
        day_of_month=definition.day_of_month,
        month_day=definition.day_of_year,
    )


def initial_due_date(
    frequency: str,
    start_date: date,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
    day_of_year: Optional[str] = None,
    last_execution: Optional[date] = None,
) -> date:
    """Derive ``next_due`` from the last occurrence, or the start date."""
    if last_execution is not None:
        return compute_next_occurrence(
            last_execution,
            frequency,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            month_day=day_of_year,
        )
    return first_occurrence(
        start_date,
        frequency,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        month_day=day_of_year,
    )


def has_reached_limit(definition: RecurringDefinition) -> bool:
    return (
        definition.max_executions is not None
        and definition.execution_count >= definition.max_executions
    )


def is_due(definition: RecurringDefinition, today: date) -> bool:
    if not definition.is_active or definition.next_due > today:
        return False
    if definition.end_date is not None and definition.end_date < today:
        return False
    return not has_reached_limit(definition)


def due_definitions(
    stores: Stores, today: date, user_id: Optional[int] = None
) -> list[RecurringDefinition]:
    filters: dict = {"is_active": True, "next_due": {"$lte": today}}
    if user_id is not None:
        filters["user_id"] = user_id
    records = stores.recurring.find(filters, order_by=("next_due", "id"))
    definitions = [RecurringDefinition.from_record(record) for record in records]
    return [definition for definition in definitions if is_due(definition, today)]


def advance(definition: RecurringDefinition) -> RecurringDefinition:
    following = next_occurrence(definition, definition.next_due)
    advanced = replace(
        definition,
        last_execution=definition.next_due,
        next_due=following,
        execution_count=definition.execution_count + 1,
    )
    expired = advanced.end_date is not None and following > advanced.end_date
    if expired or has_reached_limit(advanced):
        advanced = replace(advanced, is_active=False)
    return advanced


def materialize(definition: RecurringDefinition, suffix: Optional[str] = None) -> dict:
    if definition.amount <= 0:
        raise ValidationError("Recurring amount must be greater than zero.", field="amount")
    if definition.type not in SUPPORTED_TYPES:
        raise ValidationError("Recurring type must be income or expense.", field="type")
    if suffix is None:
        suffix = get_recurring_suffix()
    description = f"{definition.description}{suffix}"[:DESCRIPTION_MAX_LENGTH]
    return {
        "user_id": definition.user_id,
        "type": definition.type,
        "amount": definition.amount,
        "category_id": definition.category_id,
        "description": description,
        "date": definition.next_due,
        "status": "completed",
        "is_recurring": True,
        "recurring_id": definition.id,
    }


def execute(
    stores: Stores, definition: RecurringDefinition, now: datetime
) -> ExecutionOutcome:
    """Materialize the current occurrence and advance the schedule.

    Callers run this inside one database transaction. An occurrence that
    already has a transaction is never written twice; the schedule is only
    advanced past it.
    """
    record = materialize(definition)
    existing = stores.transactions.find_one(
        {
            "user_id": definition.user_id,
            "recurring_id": definition.id,
            "date": definition.next_due,
        }
    )
    if existing is not None:
        logger.warning(
            "Recurring %s already materialized for %s; advancing schedule only",
            definition.id,
            definition.next_due,
        )
        transaction, created = existing, False
    else:
        transaction, created = stores.transactions.insert(record), True

    advanced = advance(definition)
    updated = stores.recurring.update(
        definition.id, {**advanced.state_patch(), "updated_at": now}
    )
    if updated is None:
        raise NotFoundError("Recurring transaction not found.")

    if created:
        logger.info(
            "Materialized recurring %s as transaction %s dated %s",
            definition.id,
            transaction["id"],
            transaction["date"],
        )
    return ExecutionOutcome(
        definition=RecurringDefinition.from_record(updated),
        transaction=transaction,
        created=created,
        event=commit_event(None, transaction) if created else None,
    )


def run_due_recurring(
    engine: Engine, now: datetime, user_id: Optional[int] = None
) -> RunResult:
    today = now.date()
    with engine.begin() as conn:
        due = due_definitions(Stores.bind(conn), today, user_id)
    if not due:
        return RunResult(materialized=0, transactions=[], failures=[], reason="nothing_due")

    created: list[dict] = []
    failures: list[ExecutionFailure] = []
    for candidate in due:
        try:
            with engine.begin() as conn:
                stores = Stores.bind(conn)
                record = stores.recurring.find_one({"id": candidate.id})
                if record is None:
                    continue
                definition = RecurringDefinition.from_record(record)
                if not is_due(definition, today):
                    continue
                outcome = execute(stores, definition, now)
        except BudgetwiseError as exc:
            logger.warning("Recurring %s failed: %s", candidate.id, exc)
            failures.append(ExecutionFailure(definition_id=candidate.id, reason=str(exc)))
            continue

        if outcome.created:
            created.append(outcome.transaction)
        if outcome.event is not None:
            with engine.begin() as conn:
                budget_engine.recompute_for_event(Stores.bind(conn), outcome.event, now)

    return RunResult(
        materialized=len(created),
        transactions=created,
        failures=failures,
        reason="executed" if created else "nothing_materialized",
    )


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
