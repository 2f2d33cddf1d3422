from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("name", String(100)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(30), nullable=False),
    Column("type", String(10), nullable=False, default="expense"),
    Column("icon", String(50)),
    Column("color", String(7)),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(10), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("description", String(100), nullable=False),
    Column("frequency", String(10), nullable=False),
    Column("day_of_week", Integer),
    Column("day_of_month", Integer),
    Column("day_of_year", String(5)),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("next_due", Date, nullable=False),
    Column("last_execution", Date),
    Column("execution_count", Integer, nullable=False, default=0),
    Column("max_executions", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
    sqlite_autoincrement=True,
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(10), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("description", String(100), nullable=False),
    Column("notes", String(500)),
    Column("date", Date, nullable=False),
    Column("status", String(10), nullable=False, default="completed"),
    Column("payment_method", String(20), nullable=False, default="cash"),
    Column("is_recurring", Boolean, nullable=False, default=False),
    # Back-reference only; deleting a definition leaves its transactions intact.
    Column("recurring_id", Integer),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("deleted_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
    UniqueConstraint("recurring_id", "date", name="uq_transactions_recurring_occurrence"),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(50), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("period", String(10), nullable=False, default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("spent", Numeric(12, 2), nullable=False, default=0),
    Column("spent_recomputed_at", DateTime),
    Column("alert_threshold", Numeric(5, 2), nullable=False, default=80),
    Column("alert_sent", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("auto_renew", Boolean, nullable=False, default=False),
    Column("notes", String(200)),
    Column("color", String(7)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("title", String(50), nullable=False),
    Column("description", String(200)),
    Column("target_amount", Numeric(12, 2), nullable=False),
    Column("current_amount", Numeric(12, 2), nullable=False, default=0),
    Column("current_amount_recomputed_at", DateTime),
    Column("target_date", Date, nullable=False),
    Column("start_date", Date, nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("priority", String(10), nullable=False, default="medium"),
    Column("status", String(10), nullable=False, default="active"),
    Column("last_contribution", DateTime),
    Column("completed_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

goal_contributions = Table(
    "goal_contributions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("goal_id", Integer, ForeignKey("goals.id"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("note", String(100)),
    Column("is_automatic", Boolean, nullable=False, default=False),
)

goal_reminders = Table(
    "goal_reminders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("goal_id", Integer, ForeignKey("goals.id"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("message", String(100), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("sent", Boolean, nullable=False, default=False),
)
