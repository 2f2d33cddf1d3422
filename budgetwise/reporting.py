from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from budgetwise.stores import Stores

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
UNCATEGORIZED = "Uncategorized"
RECENT_LIMIT = 5


@dataclass(frozen=True)
class TotalsSummary:
    income: Decimal
    expense: Decimal
    balance: Decimal
    income_count: int
    expense_count: int
    total_transactions: int


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Optional[int]
    category_name: str
    type: str
    total: Decimal
    count: int
    avg_amount: Decimal
    percentage: int


@dataclass(frozen=True)
class TransactionStats:
    summary: TotalsSummary
    categories: list[CategoryTotal]
    recent: list[dict]


@dataclass(frozen=True)
class CategoryStats:
    categories: list[CategoryTotal]
    total_amount: Decimal
    categories_count: int
    transactions_count: int


def completed_filter(
    user_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    transaction_type: Optional[str] = None,
) -> dict:
    filters: dict = {"user_id": user_id, "is_deleted": False, "status": "completed"}
    if transaction_type is not None:
        filters["type"] = transaction_type
    date_range: dict = {}
    if start_date is not None:
        date_range["$gte"] = start_date
    if end_date is not None:
        date_range["$lte"] = end_date
    if date_range:
        filters["date"] = date_range
    return filters


def summarize_totals(transactions: list[dict]) -> TotalsSummary:
    income = sum((_amount(t) for t in transactions if t["type"] == "income"), ZERO)
    expense = sum((_amount(t) for t in transactions if t["type"] == "expense"), ZERO)
    income_count = sum(1 for t in transactions if t["type"] == "income")
    expense_count = sum(1 for t in transactions if t["type"] == "expense")
    return TotalsSummary(
        income=income,
        expense=expense,
        balance=income - expense,
        income_count=income_count,
        expense_count=expense_count,
        total_transactions=len(transactions),
    )


def group_by_category(transactions: list[dict], names: dict[int, str]) -> list[CategoryTotal]:
    """Totals per ``(category, type)``, largest first.

    ``percentage`` is each group's share of the grand total across groups.
    """
    groups: dict[tuple, list[Decimal]] = {}
    for transaction in transactions:
        key = (transaction["category_id"], transaction["type"])
        groups.setdefault(key, []).append(_amount(transaction))

    grand_total = sum((sum(amounts, ZERO) for amounts in groups.values()), ZERO)
    totals = []
    for (category_id, transaction_type), amounts in groups.items():
        total = sum(amounts, ZERO)
        totals.append(
            CategoryTotal(
                category_id=category_id,
                category_name=names.get(category_id, UNCATEGORIZED),
                type=transaction_type,
                total=total.quantize(CENT, rounding=ROUND_HALF_UP),
                count=len(amounts),
                avg_amount=(total / len(amounts)).quantize(CENT, rounding=ROUND_HALF_UP),
                percentage=_share(total, grand_total),
            )
        )
    totals.sort(key=lambda item: (-item.total, item.category_name))
    return totals


def transaction_stats(
    stores: Stores,
    user_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> TransactionStats:
    transactions = stores.transactions.find(completed_filter(user_id, start_date, end_date))
    recent = stores.transactions.find(
        {"user_id": user_id, "is_deleted": False},
        order_by=("-created_at", "-id"),
        limit=RECENT_LIMIT,
    )
    return TransactionStats(
        summary=summarize_totals(transactions),
        categories=group_by_category(transactions, category_names(stores, user_id)),
        recent=recent,
    )


def category_stats(
    stores: Stores,
    user_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    transaction_type: Optional[str] = None,
) -> CategoryStats:
    transactions = stores.transactions.find(
        completed_filter(user_id, start_date, end_date, transaction_type)
    )
    totals = group_by_category(transactions, category_names(stores, user_id))
    return CategoryStats(
        categories=totals,
        total_amount=sum((item.total for item in totals), ZERO),
        categories_count=len(totals),
        transactions_count=sum(item.count for item in totals),
    )


def category_names(stores: Stores, user_id: int) -> dict[int, str]:
    return {row["id"]: row["name"] for row in stores.categories.find({"user_id": user_id})}


def _share(part: Decimal, whole: Decimal) -> int:
    if whole <= ZERO:
        return 0
    return int((part / whole * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _amount(transaction: dict) -> Decimal:
    amount = transaction["amount"]
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
