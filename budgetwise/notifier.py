from __future__ import annotations

import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Notifier:
    """Outbound user notifications. Delivery is fire-and-forget."""

    def send_budget_alert(
        self,
        user_id: int,
        budget_name: str,
        spent: Decimal,
        limit: Decimal,
        percentage: int,
    ) -> None:
        raise NotImplementedError

    def send_goal_reminder(self, user_id: int, goal_title: str, message: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send_budget_alert(
        self,
        user_id: int,
        budget_name: str,
        spent: Decimal,
        limit: Decimal,
        percentage: int,
    ) -> None:
        logger.info(
            "Budget alert for user %s: %r at %s%% (%s of %s)",
            user_id,
            budget_name,
            percentage,
            spent,
            limit,
        )

    def send_goal_reminder(self, user_id: int, goal_title: str, message: str) -> None:
        logger.info("Goal reminder for user %s on %r: %s", user_id, goal_title, message)


def notify_budget_alert(notifier: Notifier, **kwargs) -> bool:
    try:
        notifier.send_budget_alert(**kwargs)
    except Exception:
        logger.exception("Failed to deliver budget alert for user %s", kwargs.get("user_id"))
        return False
    return True


def notify_goal_reminder(notifier: Notifier, **kwargs) -> bool:
    try:
        notifier.send_goal_reminder(**kwargs)
    except Exception:
        logger.exception("Failed to deliver goal reminder for user %s", kwargs.get("user_id"))
        return False
    return True
