"""
Exception types raised by the automation core.

Only bounded operations raise these. Individual attempts (one poll tick,
one strategy) catch their own errors and turn them into "try again" or
"try next".
"""


class CrmAutomationError(Exception):
    """Base class for every error raised by crm_e2e."""


class ConfigError(CrmAutomationError, ValueError):
    """Required configuration is missing or invalid."""


class WaitTimeoutError(CrmAutomationError):
    """A polling loop ran out of budget before its condition held."""

    def __init__(self, description: str, timeout_ms: int, elapsed_ms: int, last_error=None):
        self.description = description
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        self.last_error = last_error
        message = f"Timed out after {elapsed_ms}ms (budget {timeout_ms}ms) waiting for {description}"
        if last_error is not None:
            message += f" — last error: {last_error}"
        super().__init__(message)


class RecordIdNotFoundError(WaitTimeoutError):
    """No record identifier appeared in the page location before the deadline."""

    def __init__(self, object_name: str, timeout_ms: int, elapsed_ms: int, last_url: str = ""):
        self.object_name = object_name
        self.last_url = last_url
        super().__init__(f"{object_name} record ID in URL (last: {last_url or '<none>'})",
                         timeout_ms, elapsed_ms)


class StrategyExhaustedError(CrmAutomationError):
    """Every strategy for one UI intent failed."""

    def __init__(self, intent: str, attempts: int, last_error=None):
        self.intent = intent
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All {attempts} strategies failed for '{intent}' — last error: {last_error}"
        )


class AuthenticationError(CrmAutomationError):
    """Login or token acquisition failed. Never retried automatically."""

    def __init__(self, message: str, status_code: int = None, body: str = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class CrmApiError(CrmAutomationError):
    """The REST API answered with a non-success status."""

    def __init__(self, operation: str, status_code: int, body):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        super().__init__(f"{operation} failed: {status_code} - {body}")


class RecordSaveError(CrmAutomationError):
    """The record form did not save (validation errors, or still on the /new page)."""
