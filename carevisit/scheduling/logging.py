"""Scheduling Failure Observability.

Structured logging for scheduling failures.
Call these before re-raising the SchedulingError.
"""

from loguru import logger

from carevisit.scheduling.errors import CommitTimeout, PartialCommitFailure, SchedulingError


def log_validation_failure(err: SchedulingError, context: dict[str, str | int | float | bool | None]) -> None:
    """Log a locally detected validation failure with context.

    Args:
        err: The SchedulingError that occurred
        context: Additional context dictionary for logging
    """
    logger.warning(
        "SCHEDULING_VALIDATION_FAILED",
        extra={
            "code": err.code,
            "error": err.message,
            **context,
        },
    )


def log_commit_failure(err: CommitTimeout | PartialCommitFailure, context: dict[str, str | int | float | bool | None]) -> None:
    """Log a persistence-side commit failure with per-occurrence detail.

    Args:
        err: The CommitTimeout or PartialCommitFailure that occurred
        context: Additional context dictionary for logging
    """
    logger.error(
        "SCHEDULING_COMMIT_FAILED",
        extra={
            "code": err.code,
            "detail": err.detail(),
            **context,
        },
    )
