import unittest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from budgetwise import budget_engine
from budgetwise.errors import DomainStateError, NotFoundError, ValidationError
from budgetwise.events import TransactionCommitted
from budgetwise.notifier import Notifier
from budgetwise.stores import Stores
from budgetwise.tables import metadata


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    return engine


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.alerts = []

    def send_budget_alert(self, user_id, budget_name, spent, limit, percentage) -> None:
        self.alerts.append((user_id, budget_name, percentage))


class EvaluateBudgetTests(unittest.TestCase):
    def test_flags_for_spend_below_threshold(self) -> None:
        evaluation = budget_engine.evaluate_budget(
            Decimal("200"), Decimal("50"), Decimal("80"), False
        )
        self.assertEqual(evaluation.spent_percentage, 25)
        self.assertEqual(evaluation.remaining, Decimal("150"))
        self.assertFalse(evaluation.is_exceeded)
        self.assertFalse(evaluation.should_alert)
        self.assertEqual(evaluation.status, "ok")

    def test_alert_when_threshold_reached(self) -> None:
        evaluation = budget_engine.evaluate_budget(
            Decimal("200"), Decimal("160"), Decimal("80"), False
        )
        self.assertEqual(evaluation.spent_percentage, 80)
        self.assertTrue(evaluation.should_alert)
        self.assertEqual(evaluation.status, "near_limit")

    def test_alert_not_repeated_once_sent(self) -> None:
        evaluation = budget_engine.evaluate_budget(
            Decimal("200"), Decimal("250"), Decimal("80"), True
        )
        self.assertTrue(evaluation.is_exceeded)
        self.assertFalse(evaluation.should_alert)
        self.assertEqual(evaluation.remaining, Decimal("0"))
        self.assertEqual(evaluation.status, "over")

    def test_zero_limit_reports_zero_percent(self) -> None:
        evaluation = budget_engine.evaluate_budget(
            Decimal("0"), Decimal("10"), Decimal("80"), False
        )
        self.assertEqual(evaluation.spent_percentage, 0)
        self.assertTrue(evaluation.is_exceeded)

    def test_percentage_rounds_half_up(self) -> None:
        evaluation = budget_engine.evaluate_budget(
            Decimal("200"), Decimal("1"), Decimal("80"), False
        )
        self.assertEqual(evaluation.spent_percentage, 1)

    def test_window_must_move_forward(self) -> None:
        with self.assertRaises(ValidationError):
            budget_engine.validate_window(date(2024, 3, 31), date(2024, 3, 1))


class BudgetStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.now = datetime(2024, 3, 15, 12, 0)
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.user_id = stores.users.insert(
                {"email": "ana@example.com", "hashed_password": "x"}
            )["id"]
            self.food_id = stores.categories.insert(
                {"user_id": self.user_id, "name": "Food"}
            )["id"]
            self.home_id = stores.categories.insert(
                {"user_id": self.user_id, "name": "Home"}
            )["id"]
            self.budget = stores.budgets.insert(
                {
                    "user_id": self.user_id,
                    "name": "Groceries",
                    "amount": Decimal("200"),
                    "category_id": self.food_id,
                    "start_date": date(2024, 3, 1),
                    "end_date": date(2024, 3, 31),
                }
            )

    def tearDown(self) -> None:
        self.engine.dispose()

    def add_expense(self, stores, amount, day, **overrides):
        record = {
            "user_id": self.user_id,
            "type": "expense",
            "amount": Decimal(amount),
            "category_id": self.food_id,
            "description": "Market",
            "date": day,
        }
        record.update(overrides)
        return stores.transactions.insert(record)

    def test_recompute_ignores_soft_deleted_transactions(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "100", date(2024, 3, 1))
            self.add_expense(stores, "50", date(2024, 3, 10))
            self.add_expense(stores, "25", date(2024, 3, 31))
            self.add_expense(stores, "999", date(2024, 3, 12), is_deleted=True)
            current = budget_engine.recompute(stores, self.budget["id"], self.now)

        self.assertEqual(current.evaluation.spent, Decimal("175"))
        self.assertEqual(current.budget["spent"], Decimal("175"))
        self.assertEqual(current.budget["spent_recomputed_at"], self.now)

    def test_recompute_filters_category_type_status_and_window(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "40", date(2024, 3, 5))
            self.add_expense(stores, "10", date(2024, 2, 29))
            self.add_expense(stores, "10", date(2024, 4, 1))
            self.add_expense(stores, "10", date(2024, 3, 5), category_id=self.home_id)
            self.add_expense(stores, "10", date(2024, 3, 5), type="income")
            self.add_expense(stores, "10", date(2024, 3, 5), status="pending")
            current = budget_engine.recompute(stores, self.budget["id"], self.now)

        self.assertEqual(current.evaluation.spent, Decimal("40"))

    def test_recompute_is_idempotent(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "60", date(2024, 3, 2))
            first = budget_engine.recompute(stores, self.budget["id"], self.now)
            second = budget_engine.recompute(stores, self.budget["id"], self.now)

        self.assertEqual(first.evaluation.spent, second.evaluation.spent)
        self.assertEqual(second.evaluation.spent, Decimal("60"))

    def test_recompute_unknown_budget(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(NotFoundError):
                budget_engine.recompute(Stores.bind(conn), 999, self.now)

    def test_event_recomputes_only_matching_active_budgets(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            home_budget = stores.budgets.insert(
                {
                    "user_id": self.user_id,
                    "name": "House",
                    "amount": Decimal("300"),
                    "category_id": self.home_id,
                    "start_date": date(2024, 3, 1),
                    "end_date": date(2024, 3, 31),
                }
            )
            self.add_expense(stores, "30", date(2024, 3, 3))
            event = TransactionCommitted(user_id=self.user_id, category_ids=(self.food_id,))
            refreshed = budget_engine.recompute_for_event(stores, event, self.now)
            untouched = stores.budgets.find_one({"id": home_budget["id"]})

        self.assertEqual([item.budget["id"] for item in refreshed], [self.budget["id"]])
        self.assertEqual(refreshed[0].evaluation.spent, Decimal("30"))
        self.assertIsNone(untouched["spent_recomputed_at"])

    def test_overlapping_budget_is_rejected(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            with self.assertRaises(DomainStateError):
                budget_engine.ensure_no_overlap(
                    stores, self.user_id, self.food_id, date(2024, 3, 20), date(2024, 4, 20)
                )
            budget_engine.ensure_no_overlap(
                stores,
                self.user_id,
                self.food_id,
                date(2024, 3, 1),
                date(2024, 3, 31),
                exclude_id=self.budget["id"],
            )
            budget_engine.ensure_no_overlap(
                stores, self.user_id, self.home_id, date(2024, 3, 1), date(2024, 3, 31)
            )

    def test_renew_auto_budget_resets_window_and_counters(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            stores.budgets.update(
                self.budget["id"],
                {"auto_renew": True, "alert_sent": True, "spent": Decimal("150")},
            )
            renewed = budget_engine.renew(
                stores, self.budget["id"], datetime(2024, 4, 2, 9, 0)
            )

        self.assertEqual(renewed.budget["id"], self.budget["id"])
        self.assertEqual(renewed.budget["start_date"], date(2024, 4, 2))
        self.assertEqual(renewed.budget["end_date"], date(2024, 5, 2))
        self.assertEqual(renewed.evaluation.spent, Decimal("0"))
        self.assertFalse(renewed.budget["alert_sent"])

    def test_renew_manual_budget_replaces_record(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "20", date(2024, 4, 3))
            renewed = budget_engine.renew(
                stores, self.budget["id"], datetime(2024, 4, 2, 9, 0)
            )
            previous = stores.budgets.find_one({"id": self.budget["id"]})

        self.assertNotEqual(renewed.budget["id"], self.budget["id"])
        self.assertFalse(previous["is_active"])
        self.assertTrue(renewed.budget["is_active"])
        self.assertEqual(renewed.evaluation.spent, Decimal("20"))

    def test_collect_alerts_marks_budget_once(self) -> None:
        notifier = RecordingNotifier()
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "180", date(2024, 3, 4))
            first = budget_engine.collect_alerts(stores, self.user_id, self.now, notifier)
            second = budget_engine.collect_alerts(stores, self.user_id, self.now, notifier)

        self.assertEqual(len(first), 1)
        self.assertEqual(first[0].percentage, 90)
        self.assertEqual(second, [])
        self.assertEqual(notifier.alerts, [(self.user_id, "Groceries", 90)])

    def test_summary_totals(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            self.add_expense(stores, "250", date(2024, 3, 4))
            summary = budget_engine.summarize(stores, self.user_id, self.now)

        self.assertEqual(summary.active_count, 1)
        self.assertEqual(summary.total_budget, Decimal("200"))
        self.assertEqual(summary.total_spent, Decimal("250"))
        self.assertEqual(summary.total_remaining, Decimal("0"))
        self.assertEqual(summary.exceeded_count, 1)
        self.assertEqual(summary.overall_percentage, 125)


if __name__ == "__main__":
    unittest.main()
