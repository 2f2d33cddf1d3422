import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine, insert, select
from sqlalchemy.exc import IntegrityError

from budgetwise import budget_engine, goal_ledger, recurring_engine, reporting
from budgetwise.config import (
    configure_logging,
    get_database_url,
    get_default_alert_threshold,
    get_frontend_origin,
)
from budgetwise.errors import (
    BudgetwiseError,
    DomainStateError,
    NotFoundError,
    ValidationError,
)
from budgetwise.events import TransactionCommitted, commit_event
from budgetwise.notifier import LoggingNotifier
from budgetwise.schedule_dates import validate_anchor, validate_frequency
from budgetwise.stores import Stores
from budgetwise.tables import categories, metadata, users

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Budgetwise API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_frontend_origin()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = get_database_url()
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
notifier = LoggingNotifier()

DEFAULT_CATEGORIES = [
    ("Food", "expense"),
    ("Transport", "expense"),
    ("Health", "expense"),
    ("Education", "expense"),
    ("Leisure", "expense"),
    ("Home", "expense"),
    ("Clothing", "expense"),
    ("Other Expenses", "expense"),
    ("Salary", "income"),
    ("Freelance", "income"),
    ("Investments", "income"),
    ("Other Income", "income"),
]

HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
BULK_LIMIT = 100


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    logger.info("Database schema ready at %s", engine.url.render_as_string(hide_password=True))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CredentialsPayload(BaseModel):
    email: str
    password: str
    name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None


class CategoryType:
    values = {"expense", "income", "both"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid category type.", field="type")
        return normalized


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type.", field="type")
        return normalized


class TransactionStatus:
    values = {"completed", "pending", "cancelled"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction status.", field="status")
        return normalized


class PaymentMethod:
    values = {"cash", "credit_card", "debit_card", "bank_transfer", "pix", "other"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid payment method.", field="payment_method")
        return normalized


class BudgetPeriod:
    values = {"weekly", "monthly", "quarterly", "yearly"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid budget period.", field="period")
        return normalized


def validate_color(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not HEX_COLOR.match(value):
        raise ValidationError("Color must be a hex value.", field="color")
    return value


class CategoryPayload(BaseModel):
    name: str
    type: str = "expense"
    icon: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name or len(payload.name) > 30:
            raise ValidationError("Category name must have 1 to 30 characters.", field="name")
        payload.type = CategoryType.validate(payload.type)
        payload.color = validate_color(payload.color)
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    icon: str | None = None
    color: str | None = None
    is_default: bool
    is_active: bool
    created_at: datetime | None = None


class CategoryDeleteResponse(BaseModel):
    status: str
    category: CategoryResponse | None = None


class CategoryTotalResponse(BaseModel):
    category_id: int | None = None
    category_name: str
    type: str
    total: Decimal
    count: int
    avg_amount: Decimal
    percentage: int


class CategoryStatsResponse(BaseModel):
    stats: list[CategoryTotalResponse]
    total_amount: Decimal
    categories_count: int
    transactions_count: int


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    description: str
    date: date
    category_id: int | None = None
    notes: str | None = None
    status: str = "completed"
    payment_method: str = "cash"

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.status = TransactionStatus.validate(payload.status)
        payload.payment_method = PaymentMethod.validate(payload.payment_method)
        payload.description = payload.description.strip()
        if not payload.description or len(payload.description) > 100:
            raise ValidationError(
                "Description must have 1 to 100 characters.", field="description"
            )
        payload.notes = payload.notes.strip() if payload.notes else None
        if payload.amount <= 0:
            raise ValidationError("Amount must be greater than zero.", field="amount")
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal | None = None
    description: str | None = None
    date: date
    category_id: int | None = None
    notes: str | None = None
    status: str
    payment_method: str
    is_recurring: bool
    recurring_id: int | None = None
    is_deleted: bool
    deleted_at: datetime | None = None
    created_at: datetime | None = None


class BulkTransactionPayload(BaseModel):
    transactions: list[TransactionPayload]


class BulkTransactionResponse(BaseModel):
    count: int
    transactions: list[TransactionResponse]


class TotalsSummaryResponse(BaseModel):
    income: Decimal
    expense: Decimal
    balance: Decimal
    income_count: int
    expense_count: int
    total_transactions: int


class TransactionStatsResponse(BaseModel):
    summary: TotalsSummaryResponse
    category_stats: list[CategoryTotalResponse]
    recent_transactions: list[TransactionResponse]


class RecurringPayload(BaseModel):
    type: str
    amount: Decimal
    description: str
    frequency: str
    start_date: date
    category_id: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    day_of_year: str | None = None
    end_date: date | None = None
    max_executions: int | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "RecurringPayload") -> "RecurringPayload":
        payload.type = TransactionType.validate(payload.type)
        if payload.amount <= 0:
            raise ValidationError("Recurring amount must be greater than zero.", field="amount")
        payload.description = payload.description.strip()
        if not payload.description:
            raise ValidationError("Description required.", field="description")
        payload.frequency = validate_frequency(payload.frequency)
        validate_anchor(
            payload.frequency, payload.day_of_week, payload.day_of_month, payload.day_of_year
        )
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValidationError("End date must not precede the start date.", field="end_date")
        if payload.max_executions is not None and payload.max_executions < 1:
            raise ValidationError("Max executions must be at least one.", field="max_executions")
        return payload


class RecurringResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    description: str
    frequency: str
    start_date: date
    category_id: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    day_of_year: str | None = None
    end_date: date | None = None
    is_active: bool
    next_due: date
    last_execution: date | None = None
    execution_count: int
    max_executions: int | None = None
    created_at: datetime | None = None


class RecurringFailureResponse(BaseModel):
    recurring_id: int | None = None
    reason: str


class RecurringExecuteResponse(BaseModel):
    message: str
    reason: str
    materialized: int
    transactions: list[TransactionResponse]
    failures: list[RecurringFailureResponse]


class BudgetPayload(BaseModel):
    name: str
    amount: Decimal
    category_id: int
    start_date: date
    end_date: date
    period: str = "monthly"
    alert_threshold: Decimal | None = None
    auto_renew: bool = False
    notes: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = payload.name.strip()
        if not payload.name or len(payload.name) > 50:
            raise ValidationError("Budget name must have 1 to 50 characters.", field="name")
        if payload.amount <= 0:
            raise ValidationError("Budget amount must be greater than zero.", field="amount")
        payload.period = BudgetPeriod.validate(payload.period)
        if payload.alert_threshold is None:
            payload.alert_threshold = get_default_alert_threshold()
        elif not 0 <= payload.alert_threshold <= 100:
            raise ValidationError(
                "Alert threshold must be between 0 and 100.", field="alert_threshold"
            )
        budget_engine.validate_window(payload.start_date, payload.end_date)
        payload.notes = payload.notes.strip() if payload.notes else None
        payload.color = validate_color(payload.color)
        return payload


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    name: str
    amount: Decimal
    category_id: int
    period: str
    start_date: date
    end_date: date
    spent: Decimal
    spent_recomputed_at: datetime | None = None
    alert_threshold: Decimal
    alert_sent: bool
    is_active: bool
    auto_renew: bool
    notes: str | None = None
    color: str | None = None
    spent_percentage: int
    remaining: Decimal
    is_exceeded: bool
    should_alert: bool
    status: str
    created_at: datetime | None = None


class BudgetSummaryResponse(BaseModel):
    total_budget: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: int
    active_count: int
    exceeded_count: int
    near_limit_count: int
    budgets: list[BudgetResponse]


class BudgetAlertResponse(BaseModel):
    budget_id: int
    budget_name: str
    category_id: int
    spent: Decimal
    limit: Decimal
    percentage: int
    is_exceeded: bool


class GoalPayload(BaseModel):
    title: str
    target_amount: Decimal
    target_date: date
    current_amount: Decimal = Decimal("0")
    description: str | None = None
    priority: str = "medium"
    category_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.title = payload.title.strip()
        if not payload.title or len(payload.title) > 50:
            raise ValidationError("Goal title must have 1 to 50 characters.", field="title")
        if payload.current_amount < 0:
            raise ValidationError("Starting amount cannot be negative.", field="current_amount")
        payload.priority = payload.priority.strip().lower()
        if payload.priority not in goal_ledger.GOAL_PRIORITIES:
            raise ValidationError("Invalid goal priority.", field="priority")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class GoalUpdatePayload(BaseModel):
    title: str | None = None
    target_amount: Decimal | None = None
    target_date: date | None = None
    description: str | None = None
    priority: str | None = None
    status: str | None = None
    category_id: int | None = None

    def to_patch(self) -> dict:
        clearable = {"description", "category_id"}
        patch = {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key in clearable
        }
        if "title" in patch:
            patch["title"] = (patch["title"] or "").strip()
            if not patch["title"] or len(patch["title"]) > 50:
                raise ValidationError("Goal title must have 1 to 50 characters.", field="title")
        if patch.get("priority") is not None:
            patch["priority"] = patch["priority"].strip().lower()
            if patch["priority"] not in goal_ledger.GOAL_PRIORITIES:
                raise ValidationError("Invalid goal priority.", field="priority")
        if patch.get("status") is not None:
            patch["status"] = patch["status"].strip().lower()
        return patch


class ContributionPayload(BaseModel):
    amount: Decimal
    note: str | None = None


class ReminderPayload(BaseModel):
    message: str
    date: datetime


class ContributionResponse(BaseModel):
    id: int
    amount: Decimal
    date: datetime
    note: str | None = None
    is_automatic: bool


class ReminderResponse(BaseModel):
    id: int
    message: str
    date: datetime
    sent: bool


class GoalResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    target_amount: Decimal
    current_amount: Decimal
    target_date: date
    start_date: date
    category_id: int | None = None
    priority: str
    status: str
    last_contribution: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    progress_percentage: int
    remaining_amount: Decimal
    days_remaining: int
    monthly_target: Decimal
    is_completed: bool
    contributions: list[ContributionResponse]
    reminders: list[ReminderResponse]


class ReminderDispatchResponse(BaseModel):
    sent: int


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def http_error(exc: BudgetwiseError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError) and exc.field:
        return HTTPException(status_code=400, detail={"message": str(exc), "field": exc.field})
    return HTTPException(status_code=400, detail=str(exc))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [
            {
                "user_id": user_id,
                "name": name,
                "type": category_type,
                "is_default": True,
                "is_active": True,
            }
            for name, category_type in DEFAULT_CATEGORIES
        ],
    )


def reset_default_categories(stores: Stores, user_id: int) -> list[dict]:
    restored = []
    for name, category_type in DEFAULT_CATEGORIES:
        existing = stores.categories.find_one({"user_id": user_id, "name": name})
        if existing is None:
            row = stores.categories.insert(
                {
                    "user_id": user_id,
                    "name": name,
                    "type": category_type,
                    "is_default": True,
                    "is_active": True,
                }
            )
        elif existing["is_default"]:
            row = stores.categories.update(
                existing["id"],
                {"type": category_type, "icon": None, "color": None, "is_active": True},
            )
        else:
            # A custom category already owns this name.
            continue
        restored.append(row)
    return sorted(restored, key=lambda row: row["name"])


def resolve_category(
    stores: Stores, user_id: int, category_id: int | None, transaction_type: str
) -> dict | None:
    if category_id is None:
        return None
    category = stores.categories.find_one(
        {"id": category_id, "user_id": user_id, "is_active": True}
    )
    if category is None:
        raise NotFoundError("Category not found.")
    if category["type"] != "both" and category["type"] != transaction_type:
        raise DomainStateError("Transaction type does not match the category.")
    return category


def category_in_use(stores: Stores, user_id: int, category_id: int) -> bool:
    for store in (stores.transactions, stores.budgets, stores.recurring):
        if store.find_one({"user_id": user_id, "category_id": category_id}):
            return True
    return False


def apply_budget_impact(stores: Stores, before: dict | None, after: dict | None) -> None:
    event = commit_event(before, after)
    if event is not None:
        budget_engine.recompute_for_event(stores, event, utc_now())


def category_response(row: dict) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        icon=row["icon"],
        color=row["color"],
        is_default=row["is_default"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


def category_total_response(item: reporting.CategoryTotal) -> CategoryTotalResponse:
    return CategoryTotalResponse(
        category_id=item.category_id,
        category_name=item.category_name,
        type=item.type,
        total=item.total,
        count=item.count,
        avg_amount=item.avg_amount,
        percentage=item.percentage,
    )


def transaction_response(row: dict) -> TransactionResponse:
    redacted = bool(row["is_deleted"])
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=None if redacted else row["amount"],
        description=None if redacted else row["description"],
        date=row["date"],
        category_id=row["category_id"],
        notes=row["notes"],
        status=row["status"],
        payment_method=row["payment_method"],
        is_recurring=row["is_recurring"],
        recurring_id=row["recurring_id"],
        is_deleted=row["is_deleted"],
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
    )


def recurring_response(row: dict) -> RecurringResponse:
    return RecurringResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=row["amount"],
        description=row["description"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        category_id=row["category_id"],
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        day_of_year=row["day_of_year"],
        end_date=row["end_date"],
        is_active=row["is_active"],
        next_due=row["next_due"],
        last_execution=row["last_execution"],
        execution_count=row["execution_count"],
        max_executions=row["max_executions"],
        created_at=row["created_at"],
    )


def budget_response(current: budget_engine.BudgetSnapshot) -> BudgetResponse:
    row = current.budget
    evaluation = current.evaluation
    return BudgetResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        amount=row["amount"],
        category_id=row["category_id"],
        period=row["period"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        spent=row["spent"],
        spent_recomputed_at=row["spent_recomputed_at"],
        alert_threshold=row["alert_threshold"],
        alert_sent=row["alert_sent"],
        is_active=row["is_active"],
        auto_renew=row["auto_renew"],
        notes=row["notes"],
        color=row["color"],
        spent_percentage=evaluation.spent_percentage,
        remaining=evaluation.remaining,
        is_exceeded=evaluation.is_exceeded,
        should_alert=evaluation.should_alert,
        status=evaluation.status,
        created_at=row["created_at"],
    )


def goal_response(goal: goal_ledger.Goal, today: date) -> GoalResponse:
    progress = goal_ledger.goal_progress(goal, today)
    return GoalResponse(
        id=goal.id,
        user_id=goal.user_id,
        title=goal.title,
        description=goal.description,
        target_amount=goal.target_amount,
        current_amount=goal.current_amount,
        target_date=goal.target_date,
        start_date=goal.start_date,
        category_id=goal.category_id,
        priority=goal.priority,
        status=goal.status,
        last_contribution=goal.last_contribution,
        completed_at=goal.completed_at,
        created_at=goal.created_at,
        progress_percentage=progress.progress_percentage,
        remaining_amount=progress.remaining_amount,
        days_remaining=progress.days_remaining,
        monthly_target=progress.monthly_target,
        is_completed=progress.is_completed,
        contributions=[
            ContributionResponse(
                id=c.id,
                amount=c.amount,
                date=c.date,
                note=c.note,
                is_automatic=c.is_automatic,
            )
            for c in goal.contributions
        ],
        reminders=[
            ReminderResponse(id=r.id, message=r.message, date=r.date, sent=r.sent)
            for r in goal.reminders
        ],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password, name=payload.name)
        .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
            if row:
                ensure_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(
        id=row["id"], email=row["email"], name=row["name"], created_at=row["created_at"]
    )


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(
        id=row["id"], email=row["email"], name=row["name"], created_at=row["created_at"]
    )


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    type: str | None = None,
    include_inactive: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    filters: dict = {"user_id": user_id}
    if not include_inactive:
        filters["is_active"] = True
    if type in TransactionType.values:
        filters["type"] = {"$in": [type, "both"]}
    with engine.begin() as conn:
        ensure_default_categories(conn, user_id)
        rows = Stores.bind(conn).categories.find(filters, order_by=("name", "id"))
    return [category_response(row) for row in rows]


@app.get("/categories/stats", response_model=CategoryStatsResponse)
def get_category_stats(
    start_date: date | None = None,
    end_date: date | None = None,
    type: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryStatsResponse:
    user_id = get_user_id(x_user_id)
    transaction_type = type if type in TransactionType.values else None
    with engine.begin() as conn:
        stats = reporting.category_stats(
            Stores.bind(conn), user_id, start_date, end_date, transaction_type
        )
    return CategoryStatsResponse(
        stats=[category_total_response(item) for item in stats.categories],
        total_amount=stats.total_amount,
        categories_count=stats.categories_count,
        transactions_count=stats.transactions_count,
    )


@app.post("/categories/reset-defaults", response_model=list[CategoryResponse])
def reset_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = reset_default_categories(Stores.bind(conn), user_id)
    logger.info("Reset %s default categories for user %s", len(rows), user_id)
    return [category_response(row) for row in rows]


@app.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = Stores.bind(conn).categories.find_one({"id": category_id, "user_id": user_id})
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return category_response(row)


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc

    try:
        with engine.begin() as conn:
            row = Stores.bind(conn).categories.insert(
                {
                    "user_id": user_id,
                    "name": payload.name,
                    "type": payload.type,
                    "icon": payload.icon,
                    "color": payload.color,
                }
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return category_response(row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc

    try:
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            if not stores.categories.find_one({"id": category_id, "user_id": user_id}):
                raise HTTPException(status_code=404, detail="Category not found.")
            row = stores.categories.update(
                category_id,
                {
                    "name": payload.name,
                    "type": payload.type,
                    "icon": payload.icon,
                    "color": payload.color,
                },
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return category_response(row)


@app.delete("/categories/{category_id}", response_model=CategoryDeleteResponse)
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryDeleteResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        category = stores.categories.find_one({"id": category_id, "user_id": user_id})
        if not category:
            raise HTTPException(status_code=404, detail="Category not found.")
        if category["is_default"]:
            raise HTTPException(status_code=400, detail="Default categories cannot be deleted.")
        if category_in_use(stores, user_id, category_id):
            row = stores.categories.update(category_id, {"is_active": False})
            return CategoryDeleteResponse(status="deactivated", category=category_response(row))
        stores.categories.delete({"id": category_id, "user_id": user_id})
    return CategoryDeleteResponse(status="deleted")


@app.post("/categories/{category_id}/restore", response_model=CategoryResponse)
def restore_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        category = stores.categories.find_one(
            {"id": category_id, "user_id": user_id, "is_active": False}
        )
        if not category:
            raise HTTPException(status_code=404, detail="Category not found.")
        row = stores.categories.update(category_id, {"is_active": True})
    return category_response(row)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    type: str | None = None,
    category_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    include_deleted: bool = False,
    limit: int = Query(50, ge=1, le=500),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    filters: dict = {"user_id": user_id}
    if not include_deleted:
        filters["is_deleted"] = False
    if type is not None:
        try:
            filters["type"] = TransactionType.validate(type)
        except BudgetwiseError as exc:
            raise http_error(exc) from exc
    if category_id is not None:
        filters["category_id"] = category_id
    date_range: dict = {}
    if start_date is not None:
        date_range["$gte"] = start_date
    if end_date is not None:
        date_range["$lte"] = end_date
    if date_range:
        filters["date"] = date_range
    with engine.begin() as conn:
        rows = Stores.bind(conn).transactions.find(
            filters, order_by=("-date", "-id"), limit=limit
        )
    return [transaction_response(row) for row in rows]


@app.get("/transactions/stats", response_model=TransactionStatsResponse)
def get_transaction_stats(
    start_date: date | None = None,
    end_date: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionStatsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        stats = reporting.transaction_stats(Stores.bind(conn), user_id, start_date, end_date)
    summary = stats.summary
    return TransactionStatsResponse(
        summary=TotalsSummaryResponse(
            income=summary.income,
            expense=summary.expense,
            balance=summary.balance,
            income_count=summary.income_count,
            expense_count=summary.expense_count,
            total_transactions=summary.total_transactions,
        ),
        category_stats=[category_total_response(item) for item in stats.categories],
        recent_transactions=[transaction_response(row) for row in stats.recent],
    )


@app.post("/transactions/bulk", response_model=BulkTransactionResponse)
def create_transactions_bulk(
    payload: BulkTransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BulkTransactionResponse:
    user_id = get_user_id(x_user_id)
    if not payload.transactions:
        raise HTTPException(status_code=400, detail="At least one transaction is required.")
    if len(payload.transactions) > BULK_LIMIT:
        raise HTTPException(
            status_code=400, detail=f"At most {BULK_LIMIT} transactions per request."
        )

    items = []
    errors = []
    for index, item in enumerate(payload.transactions, start=1):
        try:
            items.append(TransactionPayload.validate_payload(item))
        except BudgetwiseError as exc:
            errors.append(f"Transaction {index}: {exc}")
    if errors:
        raise HTTPException(
            status_code=400,
            detail={"message": "Some transactions are invalid.", "errors": errors},
        )

    try:
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            rows = []
            for item in items:
                resolve_category(stores, user_id, item.category_id, item.type)
                rows.append(
                    stores.transactions.insert(
                        {
                            "user_id": user_id,
                            "type": item.type,
                            "amount": item.amount,
                            "description": item.description,
                            "date": item.date,
                            "category_id": item.category_id,
                            "notes": item.notes,
                            "status": item.status,
                            "payment_method": item.payment_method,
                        }
                    )
                )
            category_ids = []
            for row in rows:
                event = commit_event(None, row)
                if event is None:
                    continue
                category_ids.extend(c for c in event.category_ids if c not in category_ids)
            if category_ids:
                budget_engine.recompute_for_event(
                    stores, TransactionCommitted(user_id, tuple(category_ids)), utc_now()
                )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    logger.info("Created %s transactions in bulk for user %s", len(rows), user_id)
    return BulkTransactionResponse(
        count=len(rows), transactions=[transaction_response(row) for row in rows]
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = Stores.bind(conn).transactions.find_one(
            {"id": transaction_id, "user_id": user_id, "is_deleted": False}
        )
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            resolve_category(stores, user_id, payload.category_id, payload.type)
            row = stores.transactions.insert(
                {
                    "user_id": user_id,
                    "type": payload.type,
                    "amount": payload.amount,
                    "description": payload.description,
                    "date": payload.date,
                    "category_id": payload.category_id,
                    "notes": payload.notes,
                    "status": payload.status,
                    "payment_method": payload.payment_method,
                }
            )
            apply_budget_impact(stores, None, row)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return transaction_response(row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            existing = stores.transactions.find_one(
                {"id": transaction_id, "user_id": user_id, "is_deleted": False}
            )
            if existing is None:
                raise NotFoundError("Transaction not found.")
            if payload.category_id != existing["category_id"] or payload.type != existing["type"]:
                resolve_category(stores, user_id, payload.category_id, payload.type)
            row = stores.transactions.update(
                transaction_id,
                {
                    "type": payload.type,
                    "amount": payload.amount,
                    "description": payload.description,
                    "date": payload.date,
                    "category_id": payload.category_id,
                    "notes": payload.notes,
                    "status": payload.status,
                    "payment_method": payload.payment_method,
                    "updated_at": utc_now(),
                },
            )
            apply_budget_impact(stores, existing, row)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="This recurring occurrence already has a transaction."
        ) from exc
    return transaction_response(row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        existing = stores.transactions.find_one(
            {"id": transaction_id, "user_id": user_id, "is_deleted": False}
        )
        if existing is None:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        row = stores.transactions.update(
            transaction_id, {"is_deleted": True, "deleted_at": utc_now()}
        )
        apply_budget_impact(stores, existing, row)
    return {"status": "deleted"}


@app.post("/transactions/{transaction_id}/restore", response_model=TransactionResponse)
def restore_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        existing = stores.transactions.find_one(
            {"id": transaction_id, "user_id": user_id, "is_deleted": True}
        )
        if existing is None:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        row = stores.transactions.update(
            transaction_id, {"is_deleted": False, "deleted_at": None}
        )
        apply_budget_impact(stores, existing, row)
    return transaction_response(row)


@app.get("/recurring", response_model=list[RecurringResponse])
def list_recurring(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = Stores.bind(conn).recurring.find({"user_id": user_id}, order_by=("-created_at", "-id"))
    return [recurring_response(row) for row in rows]


@app.post("/recurring", response_model=RecurringResponse)
def create_recurring(
    payload: RecurringPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RecurringPayload.validate_payload(payload)
        next_due = recurring_engine.initial_due_date(
            payload.frequency,
            payload.start_date,
            payload.day_of_week,
            payload.day_of_month,
            payload.day_of_year,
        )
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            resolve_category(stores, user_id, payload.category_id, payload.type)
            row = stores.recurring.insert(
                {
                    "user_id": user_id,
                    "type": payload.type,
                    "amount": payload.amount,
                    "description": payload.description,
                    "frequency": payload.frequency,
                    "start_date": payload.start_date,
                    "category_id": payload.category_id,
                    "day_of_week": payload.day_of_week,
                    "day_of_month": payload.day_of_month,
                    "day_of_year": payload.day_of_year,
                    "end_date": payload.end_date,
                    "max_executions": payload.max_executions,
                    "is_active": payload.is_active,
                    "next_due": next_due,
                    "execution_count": 0,
                }
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return recurring_response(row)


@app.post("/recurring/execute", response_model=RecurringExecuteResponse)
def execute_recurring(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringExecuteResponse:
    user_id = get_user_id(x_user_id)
    result = recurring_engine.run_due_recurring(engine, utc_now(), user_id=user_id)
    if result.failures:
        logger.warning(
            "%s recurring definitions failed for user %s", len(result.failures), user_id
        )
    if result.reason == "nothing_due":
        message = "No recurring transactions are due."
    else:
        message = f"{result.materialized} transactions executed"
    return RecurringExecuteResponse(
        message=message,
        reason=result.reason,
        materialized=result.materialized,
        transactions=[transaction_response(row) for row in result.transactions],
        failures=[
            RecurringFailureResponse(recurring_id=failure.definition_id, reason=failure.reason)
            for failure in result.failures
        ],
    )


@app.put("/recurring/{recurring_id}", response_model=RecurringResponse)
def update_recurring(
    recurring_id: int,
    payload: RecurringPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RecurringPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            existing = stores.recurring.find_one({"id": recurring_id, "user_id": user_id})
            if existing is None:
                raise NotFoundError("Recurring transaction not found.")
            resolve_category(stores, user_id, payload.category_id, payload.type)
            values = {
                "type": payload.type,
                "amount": payload.amount,
                "description": payload.description,
                "frequency": payload.frequency,
                "start_date": payload.start_date,
                "category_id": payload.category_id,
                "day_of_week": payload.day_of_week,
                "day_of_month": payload.day_of_month,
                "day_of_year": payload.day_of_year,
                "end_date": payload.end_date,
                "max_executions": payload.max_executions,
                "updated_at": utc_now(),
            }
            next_due = existing["next_due"]
            if any(values[name] != existing[name] for name in recurring_engine.SCHEDULE_FIELDS):
                next_due = recurring_engine.initial_due_date(
                    payload.frequency,
                    payload.start_date,
                    payload.day_of_week,
                    payload.day_of_month,
                    payload.day_of_year,
                    last_execution=existing["last_execution"],
                )
            reached_limit = (
                payload.max_executions is not None
                and existing["execution_count"] >= payload.max_executions
            )
            ended = payload.end_date is not None and next_due > payload.end_date
            values["next_due"] = next_due
            values["is_active"] = payload.is_active and not reached_limit and not ended
            row = stores.recurring.update(recurring_id, values)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return recurring_response(row)


@app.delete("/recurring/{recurring_id}")
def delete_recurring(
    recurring_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        deleted = Stores.bind(conn).recurring.delete({"id": recurring_id, "user_id": user_id})
        if deleted == 0:
            raise HTTPException(status_code=404, detail="Recurring transaction not found.")
    return {"status": "deleted"}


@app.get("/budgets/summary", response_model=BudgetSummaryResponse)
def budgets_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        summary = budget_engine.summarize(Stores.bind(conn), user_id, utc_now())
    return BudgetSummaryResponse(
        total_budget=summary.total_budget,
        total_spent=summary.total_spent,
        total_remaining=summary.total_remaining,
        overall_percentage=summary.overall_percentage,
        active_count=summary.active_count,
        exceeded_count=summary.exceeded_count,
        near_limit_count=summary.near_limit_count,
        budgets=[budget_response(item) for item in summary.budgets],
    )


@app.get("/budgets/alerts", response_model=list[BudgetAlertResponse])
def budget_alerts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetAlertResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        alerts = budget_engine.collect_alerts(Stores.bind(conn), user_id, utc_now(), notifier)
    return [
        BudgetAlertResponse(
            budget_id=alert.budget_id,
            budget_name=alert.budget_name,
            category_id=alert.category_id,
            spent=alert.spent,
            limit=alert.limit,
            percentage=alert.percentage,
            is_exceeded=alert.is_exceeded,
        )
        for alert in alerts
    ]


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    status: str | None = None,
    period: str | None = None,
    include_inactive: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    today = now.date()
    filters: dict = {"user_id": user_id}
    if period in BudgetPeriod.values:
        filters["period"] = period
    if not include_inactive:
        filters["is_active"] = True
    if status == "active":
        filters["start_date"] = {"$lte": today}
        filters["end_date"] = {"$gte": today}
    elif status == "expired":
        filters["end_date"] = {"$lt": today}
    elif status == "future":
        filters["start_date"] = {"$gt": today}
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        rows = stores.budgets.find(filters, order_by=("-start_date", "-id"))
        snapshots = [budget_engine.recompute_record(stores, row, now) for row in rows]
    return [budget_response(item) for item in snapshots]


@app.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            current = budget_engine.recompute(Stores.bind(conn), budget_id, utc_now(), user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(current)


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            resolve_category(stores, user_id, payload.category_id, "expense")
            budget_engine.ensure_no_overlap(
                stores, user_id, payload.category_id, payload.start_date, payload.end_date
            )
            row = stores.budgets.insert(
                {
                    "user_id": user_id,
                    "name": payload.name,
                    "amount": payload.amount,
                    "category_id": payload.category_id,
                    "period": payload.period,
                    "start_date": payload.start_date,
                    "end_date": payload.end_date,
                    "alert_threshold": payload.alert_threshold,
                    "auto_renew": payload.auto_renew,
                    "notes": payload.notes,
                    "color": payload.color,
                }
            )
            current = budget_engine.recompute_record(stores, row, utc_now())
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(current)


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            existing = budget_engine.load_budget(stores, budget_id, user_id)
            if payload.category_id != existing["category_id"]:
                resolve_category(stores, user_id, payload.category_id, "expense")
            budget_engine.ensure_no_overlap(
                stores,
                user_id,
                payload.category_id,
                payload.start_date,
                payload.end_date,
                exclude_id=budget_id,
            )
            row = stores.budgets.update(
                budget_id,
                {
                    "name": payload.name,
                    "amount": payload.amount,
                    "category_id": payload.category_id,
                    "period": payload.period,
                    "start_date": payload.start_date,
                    "end_date": payload.end_date,
                    "alert_threshold": payload.alert_threshold,
                    "auto_renew": payload.auto_renew,
                    "notes": payload.notes,
                    "color": payload.color,
                    "updated_at": utc_now(),
                },
            )
            current = budget_engine.recompute_record(stores, row, utc_now())
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(current)


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        deleted = Stores.bind(conn).budgets.delete({"id": budget_id, "user_id": user_id})
        if deleted == 0:
            raise HTTPException(status_code=404, detail="Budget not found.")
    return {"status": "deleted"}


@app.post("/budgets/{budget_id}/toggle", response_model=BudgetResponse)
def toggle_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            existing = budget_engine.load_budget(stores, budget_id, user_id)
            row = stores.budgets.update(
                budget_id, {"is_active": not existing["is_active"], "updated_at": utc_now()}
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(budget_engine.snapshot(row))


@app.post("/budgets/{budget_id}/renew", response_model=BudgetResponse)
def renew_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            current = budget_engine.renew(Stores.bind(conn), budget_id, utc_now(), user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(current)


@app.post("/budgets/{budget_id}/recompute", response_model=BudgetResponse)
def recompute_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            current = budget_engine.recompute(Stores.bind(conn), budget_id, utc_now(), user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return budget_response(current)


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[GoalResponse]:
    user_id = get_user_id(x_user_id)
    today = utc_now().date()
    with engine.begin() as conn:
        stores = Stores.bind(conn)
        rows = stores.goals.find({"user_id": user_id}, order_by=("-created_at", "-id"))
        goals = [goal_ledger.load_goal(stores, row["id"]) for row in rows]
    return [goal_response(goal, today) for goal in goals]


@app.post("/goals/reminders/dispatch", response_model=ReminderDispatchResponse)
def dispatch_goal_reminders(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReminderDispatchResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        sent = goal_ledger.dispatch_due_reminders(
            Stores.bind(conn), utc_now(), notifier, user_id=user_id
        )
    return ReminderDispatchResponse(sent=sent)


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(
    goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            goal = goal_ledger.load_goal(Stores.bind(conn), goal_id, user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, utc_now().date())


@app.post("/goals", response_model=GoalResponse)
def create_goal(
    payload: GoalPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    try:
        payload = GoalPayload.validate_payload(payload)
        with engine.begin() as conn:
            stores = Stores.bind(conn)
            if payload.category_id is not None and not stores.categories.find_one(
                {"id": payload.category_id, "user_id": user_id}
            ):
                raise NotFoundError("Category not found.")
            goal = goal_ledger.create_goal(
                stores,
                user_id,
                payload.title,
                payload.target_amount,
                payload.target_date,
                now,
                starting_amount=payload.current_amount,
                description=payload.description,
                priority=payload.priority,
                category_id=payload.category_id,
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, now.date())


@app.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    try:
        patch = payload.to_patch()
        with engine.begin() as conn:
            goal = goal_ledger.update_goal(Stores.bind(conn), goal_id, patch, now, user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, now.date())


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            goal_ledger.delete_goal(Stores.bind(conn), goal_id, user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/goals/{goal_id}/contributions", response_model=GoalResponse)
def add_goal_contribution(
    goal_id: int,
    payload: ContributionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    note = payload.note.strip() if payload.note else None
    try:
        with engine.begin() as conn:
            goal = goal_ledger.contribute_to_goal(
                Stores.bind(conn), goal_id, payload.amount, note, now, user_id
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, now.date())


@app.delete("/goals/{goal_id}/contributions/{contribution_id}", response_model=GoalResponse)
def remove_goal_contribution(
    goal_id: int,
    contribution_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    try:
        with engine.begin() as conn:
            goal = goal_ledger.remove_goal_contribution(
                Stores.bind(conn), goal_id, contribution_id, now, user_id
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, now.date())


@app.post("/goals/{goal_id}/reminders", response_model=GoalResponse)
def add_goal_reminder(
    goal_id: int,
    payload: ReminderPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    now = utc_now()
    when = payload.date
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc).replace(tzinfo=None)
    try:
        with engine.begin() as conn:
            goal = goal_ledger.schedule_reminder(
                Stores.bind(conn), goal_id, payload.message, when, now, user_id
            )
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, now.date())


@app.delete("/goals/{goal_id}/reminders/{reminder_id}", response_model=GoalResponse)
def remove_goal_reminder(
    goal_id: int,
    reminder_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            goal = goal_ledger.delete_reminder(Stores.bind(conn), goal_id, reminder_id, user_id)
    except BudgetwiseError as exc:
        raise http_error(exc) from exc
    return goal_response(goal, utc_now().date())


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
