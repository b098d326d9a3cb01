class ProviderError(Exception):
    """Base for failures talking to the verification provider."""

    retryable = False

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx. Retried inside the client; never advances state."""

    retryable = True


class InvalidSubject(ProviderError):
    """4xx validation failure on creation. Fatal for this attempt, surfaced immediately."""


class ResultNotReady(ProviderError):
    """The proof document does not exist yet (remote state not terminal or not yet synced)."""
