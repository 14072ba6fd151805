from typing import Any, Optional


class FanoutError(Exception):
    """
    Base for every failure the core surfaces. Carries the same
    status_code/detail pair an HTTP layer would report, plus a stable code.
    """

    status_code = 500
    code = "FANOUT_ERROR"
    retryable = False

    def __init__(self, detail: str, status_code: Optional[int] = None, code: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        return self.detail


class ValidationFailure(FanoutError):
    """Caller error. Never retried."""

    status_code = 400
    code = "VALIDATION_FAILURE"


class RateLimited(FanoutError):
    status_code = 503
    code = "BLOCKCHAIN_API_RATE_LIMITED"
    retryable = True


class UpstreamUnavailable(FanoutError):
    status_code = 502
    code = "BLOCKCHAIN_API_UNAVAILABLE"
    retryable = True


class ConfirmationTimeout(FanoutError):
    # soft: logged by the poller, callers proceed with the last known value
    status_code = 504
    code = "CONFIRMATION_TIMEOUT"


class InsufficientFunds(FanoutError):
    status_code = 402
    code = "INSUFFICIENT_BALANCE"


class WarmupFailure(FanoutError):
    status_code = 503
    code = "BLOCKCHAIN_API_WARMING_UP"
