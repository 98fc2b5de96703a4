"""
Audit pipeline failure taxonomy.

Only ``MalformedTask``, ``LookupFailure`` and ``RateLimited`` ever leave the
orchestrator; everything else is recorded as an error audit and absorbed.
"""

RATE_LIMIT_STATUS = 429


class AuditError(Exception):
    """Base class for audit pipeline failures."""


class MalformedTask(AuditError):
    """The task payload carries no usable site reference."""


class LookupFailure(AuditError):
    """The referenced site does not exist (any more)."""

    def __init__(self, site_id: str):
        super().__init__(f"Site {site_id} not found")
        self.site_id = site_id


class ScoringFailure(AuditError):
    """The PageSpeed Insights call failed or returned nothing usable."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        payload: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.payload = payload
        self.retry_after = retry_after

    @property
    def is_rate_limited(self) -> bool:
        return self.status == RATE_LIMIT_STATUS


class RateLimited(AuditError):
    """PSI rejected the call with 429; the consumer should back off."""

    def __init__(self, site_id: str, retry_after: float | None = None):
        super().__init__("Rate limit exceeded")
        self.site_id = site_id
        self.retry_after = retry_after


def error_message(exc: BaseException) -> str:
    """Message for an error record: upstream payload, then the exception text, then its repr."""
    payload = getattr(exc, "payload", None)
    if payload:
        return str(payload)
    message = str(exc)
    if message:
        return message
    return repr(exc)
