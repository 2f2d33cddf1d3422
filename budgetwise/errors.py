from __future__ import annotations


class BudgetwiseError(ValueError):
    """Base class for errors recovered at the component boundary."""


class ValidationError(BudgetwiseError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DomainStateError(BudgetwiseError):
    pass


class NotFoundError(BudgetwiseError):
    pass
