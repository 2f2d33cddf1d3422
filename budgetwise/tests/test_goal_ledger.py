import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from budgetwise import goal_ledger
from budgetwise.errors import DomainStateError, NotFoundError, ValidationError
from budgetwise.goal_ledger import Contribution, Goal
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


def build_goal(*amounts: str, **overrides) -> Goal:
    values = {
        "id": 1,
        "user_id": 1,
        "title": "Emergency fund",
        "target_amount": Decimal("1000"),
        "target_date": date(2024, 12, 31),
        "start_date": date(2024, 1, 1),
        "contributions": tuple(
            Contribution(id=index + 1, amount=Decimal(amount), date=datetime(2024, 1, 2))
            for index, amount in enumerate(amounts)
        ),
    }
    values.update(overrides)
    return Goal(**values)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.reminders = []

    def send_goal_reminder(self, user_id, goal_title, message) -> None:
        self.reminders.append((user_id, goal_title, message))


class GoalLedgerTests(unittest.TestCase):
    now = datetime(2024, 6, 1, 10, 0)

    def test_contribution_reaching_target_completes_goal(self) -> None:
        goal = build_goal("900")

        completed, contribution = goal_ledger.add_contribution(
            goal, Decimal("150"), None, False, self.now
        )

        self.assertEqual(completed.current_amount, Decimal("1050"))
        self.assertEqual(completed.status, "completed")
        self.assertEqual(completed.completed_at, self.now)
        self.assertEqual(completed.last_contribution, self.now)
        self.assertEqual(contribution.amount, Decimal("150"))

    def test_removing_contribution_reopens_goal(self) -> None:
        goal = build_goal("900", "150", status="completed", completed_at=self.now)

        reopened, removed = goal_ledger.remove_contribution(goal, 2)

        self.assertEqual(removed.amount, Decimal("150"))
        self.assertEqual(reopened.current_amount, Decimal("900"))
        self.assertEqual(reopened.status, "active")
        self.assertIsNone(reopened.completed_at)

    def test_current_amount_tracks_contribution_sum(self) -> None:
        goal = build_goal("10.50", "20.25", "5")
        goal, _ = goal_ledger.add_contribution(goal, Decimal("4.25"), "bonus", False, self.now)
        goal, _ = goal_ledger.remove_contribution(goal, 2)

        self.assertEqual(goal.current_amount, Decimal("19.75"))
        self.assertEqual(
            goal.current_amount, sum((c.amount for c in goal.contributions), Decimal("0"))
        )

    def test_contribution_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            goal_ledger.add_contribution(build_goal(), Decimal("0"), None, False, self.now)

    def test_inactive_goal_rejects_contributions(self) -> None:
        with self.assertRaises(DomainStateError):
            goal_ledger.add_contribution(
                build_goal(status="paused"), Decimal("10"), None, False, self.now
            )

    def test_removing_unknown_contribution(self) -> None:
        with self.assertRaises(NotFoundError):
            goal_ledger.remove_contribution(build_goal("10"), 42)

    def test_reminder_must_be_in_future(self) -> None:
        with self.assertRaises(DomainStateError):
            goal_ledger.add_reminder(build_goal(), "Save more", self.now, self.now)

        goal, reminder = goal_ledger.add_reminder(
            build_goal(), "Save more", self.now + timedelta(days=1), self.now
        )
        self.assertEqual(goal.reminders, (reminder,))
        self.assertFalse(reminder.sent)

    def test_progress_for_open_goal(self) -> None:
        progress = goal_ledger.goal_progress(build_goal("250"), date(2024, 9, 30))

        self.assertEqual(progress.progress_percentage, 25)
        self.assertEqual(progress.remaining_amount, Decimal("750"))
        self.assertEqual(progress.days_remaining, 92)
        self.assertEqual(progress.monthly_target, Decimal("187.50"))
        self.assertFalse(progress.is_completed)

    def test_progress_for_completed_goal(self) -> None:
        progress = goal_ledger.goal_progress(build_goal("1200"), date(2024, 9, 30))

        self.assertTrue(progress.is_completed)
        self.assertEqual(progress.remaining_amount, Decimal("0"))
        self.assertEqual(progress.monthly_target, Decimal("0"))
        self.assertEqual(progress.days_remaining, 0)


class GoalStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.now = datetime(2024, 6, 1, 10, 0)
        with self.engine.begin() as conn:
            self.user_id = Stores.bind(conn).users.insert(
                {"email": "ana@example.com", "hashed_password": "x"}
            )["id"]

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_starting_amount_is_recorded_as_contribution(self) -> None:
        with self.engine.begin() as conn:
            goal = goal_ledger.create_goal(
                Stores.bind(conn),
                self.user_id,
                "Trip",
                Decimal("1000"),
                date(2024, 12, 1),
                self.now,
                starting_amount=Decimal("900"),
            )

        self.assertEqual(goal.current_amount, Decimal("900"))
        self.assertEqual(len(goal.contributions), 1)
        self.assertEqual(goal.contributions[0].note, goal_ledger.STARTING_BALANCE_NOTE)

    def test_target_date_must_follow_start(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(ValidationError):
                goal_ledger.create_goal(
                    Stores.bind(conn),
                    self.user_id,
                    "Trip",
                    Decimal("1000"),
                    date(2024, 5, 1),
                    self.now,
                )

    def test_contribute_then_remove_persists_cached_amount(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores,
                self.user_id,
                "Trip",
                Decimal("1000"),
                date(2024, 12, 1),
                self.now,
                starting_amount=Decimal("900"),
            )
            completed = goal_ledger.contribute_to_goal(
                stores, goal.id, Decimal("150"), None, self.now, self.user_id
            )
            record = stores.goals.find_one({"id": goal.id})
            self.assertEqual(completed.status, "completed")
            self.assertEqual(record["current_amount"], Decimal("1050"))
            self.assertEqual(record["status"], "completed")

            added = completed.contributions[-1]
            reopened = goal_ledger.remove_goal_contribution(
                stores, goal.id, added.id, self.now, self.user_id
            )
            record = stores.goals.find_one({"id": goal.id})

        self.assertEqual(reopened.current_amount, Decimal("900"))
        self.assertEqual(reopened.status, "active")
        self.assertIsNone(record["completed_at"])
        self.assertEqual(record["current_amount"], Decimal("900"))

    def test_goal_of_other_user_is_not_found(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores, self.user_id, "Trip", Decimal("1000"), date(2024, 12, 1), self.now
            )
            with self.assertRaises(NotFoundError):
                goal_ledger.load_goal(stores, goal.id, self.user_id + 1)

    def test_update_cannot_force_completion(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores, self.user_id, "Trip", Decimal("1000"), date(2024, 12, 1), self.now
            )
            with self.assertRaises(DomainStateError):
                goal_ledger.update_goal(stores, goal.id, {"status": "completed"}, self.now)

    def test_lowering_target_completes_goal(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores,
                self.user_id,
                "Trip",
                Decimal("1000"),
                date(2024, 12, 1),
                self.now,
                starting_amount=Decimal("600"),
            )
            updated = goal_ledger.update_goal(
                stores, goal.id, {"target_amount": Decimal("500")}, self.now
            )

        self.assertEqual(updated.status, "completed")
        self.assertEqual(updated.completed_at, self.now)

    def test_due_reminders_are_sent_once(self) -> None:
        notifier = RecordingNotifier()
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores, self.user_id, "Trip", Decimal("1000"), date(2024, 12, 1), self.now
            )
            goal_ledger.schedule_reminder(
                stores, goal.id, "Put money aside", self.now + timedelta(hours=1), self.now
            )
            goal_ledger.schedule_reminder(
                stores, goal.id, "Later", self.now + timedelta(days=10), self.now
            )
            later = self.now + timedelta(days=1)
            first = goal_ledger.dispatch_due_reminders(stores, later, notifier)
            second = goal_ledger.dispatch_due_reminders(stores, later, notifier)

        self.assertEqual(first, 1)
        self.assertEqual(second, 0)
        self.assertEqual(notifier.reminders, [(self.user_id, "Trip", "Put money aside")])

    def test_delete_goal_removes_children(self) -> None:
        with self.engine.begin() as conn:
            stores = Stores.bind(conn)
            goal = goal_ledger.create_goal(
                stores,
                self.user_id,
                "Trip",
                Decimal("1000"),
                date(2024, 12, 1),
                self.now,
                starting_amount=Decimal("100"),
            )
            goal_ledger.delete_goal(stores, goal.id, self.user_id)
            leftovers = stores.contributions.find({"goal_id": goal.id})

        self.assertEqual(leftovers, [])


if __name__ == "__main__":
    unittest.main()
