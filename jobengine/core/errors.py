from typing import Iterable, Optional


class JobEngineError(Exception):
    """Base class for every error the engine raises."""


class JobNotFound(JobEngineError):
    def __init__(self, job_id: str, kind: str = "Job"):
        self.job_id = job_id
        super().__init__(f"{kind} {job_id} not found")


class InvalidTransition(JobEngineError):
    """Raised when a job is not in any of the states a transition expects."""

    def __init__(self, job_id: str, current, target, expected: Optional[Iterable] = None):
        self.job_id = job_id
        self.current = current
        self.target = target
        self.expected = tuple(expected or ())
        names = ", ".join(getattr(s, "value", str(s)) for s in self.expected)
        super().__init__(
            f"Job {job_id} cannot move to {getattr(target, 'value', target)} "
            f"from {getattr(current, 'value', current)}"
            + (f" (expected one of: {names})" if names else "")
        )


class InvalidCronExpression(JobEngineError):
    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        super().__init__(f"Invalid cron expression {expression!r}" + (f": {reason}" if reason else ""))


class HandlerFault(JobEngineError):
    """A handler raised or timed out. Never escapes the worker pool."""

    def __init__(self, job_id: str, detail: str, timed_out: bool = False):
        self.job_id = job_id
        self.detail = detail
        self.timed_out = timed_out
        super().__init__(detail)


class StoreUnavailable(JobEngineError):
    """The durable store could not be reached or failed mid-operation."""
