"""Errors raised by the reconciliation pipeline."""


class ReconciliationError(Exception):
    """Base error for the reconciliation pipeline."""


class InferenceUnavailable(ReconciliationError):
    """Inference could not be reached after the retry budget was spent."""


class ModelOutputMalformed(ReconciliationError):
    """Inference returned output that does not match the response contract."""


class AnalysisNotFound(ReconciliationError):
    """No analysis exists for the given id."""


class ConflictNotFound(ReconciliationError):
    """The analysis has no conflict for the given item."""


class ConflictAlreadyResolved(ReconciliationError):
    """The conflict for the given item was already resolved."""


class AnalysisClosed(ReconciliationError):
    """The analysis was cancelled or failed and can no longer change."""


class InvalidTransition(ReconciliationError):
    """An analysis status change is not allowed from its current status."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move analysis from {current} to {target}")
        self.current = current
        self.target = target


class DuplicateAnalysis(ReconciliationError):
    """An analysis with the requested id already exists or is running."""
