"""
Exception types shared by handlers, the registry and the dispatcher.
"""


class DelayedJobError(Exception):
    """Base exception for the delayed job queue."""


class JobFailure(DelayedJobError):
    """
    Raised by a handler to report a failed execution.

    `permanent` decides what the dispatcher does with the job: permanent
    failures complete the job with a failure reason, anything else is retried
    with backoff until the attempt budget is spent.
    """

    def __init__(
        self,
        message: str,
        permanent: bool = False,
        cause: BaseException | None = None,
    ):
        self.message = message
        self.permanent = permanent
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class TransientFailure(JobFailure):
    """Recoverable failure (transport, I/O); the job is retried."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message, permanent=False, cause=cause)


class PermanentFailure(JobFailure):
    """Terminal failure (missing entity, wrong state); never retried."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message, permanent=True, cause=cause)


class ConfigurationError(DelayedJobError):
    """Invalid handler wiring, e.g. two handlers claiming one queue name."""
