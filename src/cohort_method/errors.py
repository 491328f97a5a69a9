"""
Exception hierarchy for the cohort method engine.

Validation errors (ConfigurationError, DuplicateIdError) are raised before any
task runs and abort the whole call. Task-level errors (TaskComputationError,
StoreIOError) are caught by the scheduler and recorded per task.
"""
from __future__ import annotations


class CohortMethodError(Exception):
    """Base class for all cohort method errors."""


class ConfigurationError(CohortMethodError):
    """An analysis specification is invalid or internally inconsistent."""


class DuplicateIdError(CohortMethodError):
    """Two analyses, hypotheses or outcomes share an identifier."""


class TaskComputationError(CohortMethodError):
    """A stage raised while computing a task."""


class StoreIOError(CohortMethodError):
    """Reading or committing an artifact failed."""


class NotFoundError(CohortMethodError):
    """The requested artifact, manifest or tuple does not exist."""
