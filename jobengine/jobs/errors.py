"""Job engine exceptions."""


class JobEngineError(Exception):
    """Base class for job engine errors."""


class InvalidRequestError(JobEngineError, ValueError):
    """Enqueue or schedule request is missing or malformed."""


class PayloadError(JobEngineError):
    """Payload cannot be encoded to or decoded from JSON."""


class CronExpressionError(JobEngineError, ValueError):
    """Cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"invalid cron expression {expression!r}: {reason}")


class EngineStateError(JobEngineError):
    """Lifecycle call made in the wrong state (e.g. starting twice)."""


class StoreError(JobEngineError):
    """The job store rejected or failed an operation."""


class PermanentJobError(Exception):
    """Raised by a handler to fail a job without retrying it.

    Use for errors that cannot succeed on a later attempt, such as a payload
    referring to a record that no longer exists.
    """
