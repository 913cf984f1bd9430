"""
Error taxonomy of the exam session engine.

The engine decides every failure; the API layer only maps these onto HTTP
responses (see ``routers/errors.py``).
"""


class ExamSessionError(Exception):
    """Base class. ``message`` is safe to show to the student."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExamSessionError):
    """Bad or missing input. Nothing was changed."""


class NotFoundError(ExamSessionError):
    """Exam, attempt or question does not exist."""


class ForbiddenError(ExamSessionError):
    """Exam inactive, wrong access code, attempt closed, or wrong owner."""


class TimeExceededError(ExamSessionError):
    """
    Submit arrived after the exam duration plus the submit grace.

    The attempt has already been graded with its last saved answers when this
    is raised; ``result`` holds that graded outcome.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ConflictError(ExamSessionError):
    """A conditional store update lost its race."""


class TransientStoreError(ExamSessionError):
    """Storage unreachable or failed mid-operation. Safe to retry idempotent calls."""
