"""Error taxonomy shared by indexing and retrieval.

Provider failures are classified into a small set of categories so the
orchestrator and the retriever can decide between backing off, degrading
to a safe default, and failing fast at startup.
"""


class ChatRecallError(Exception):
    """Base class for chat-recall errors."""


class TransientProviderError(ChatRecallError):
    """A provider call failed in a way that is expected to heal (timeout, 5xx)."""


class RateLimitError(TransientProviderError):
    """The provider asked us to slow down.

    Attributes:
        retry_after: Provider-suggested delay in seconds, if it sent one
    """

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(ChatRecallError):
    """A judge or LLM returned output that could not be parsed."""


class FatalConfigurationError(ChatRecallError):
    """Required capability wiring or configuration is missing or invalid."""


def _status_code(error: Exception) -> int | None:
    """Extract an HTTP status code from SDK exceptions."""
    code = getattr(error, "status_code", None)
    if isinstance(code, int):
        return code

    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code

    return None


def _retry_after(error: Exception) -> float | None:
    """Extract the Retry-After header value from an SDK exception."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def classify_provider_error(error: Exception) -> Exception:
    """Map a vendor SDK exception onto the chat-recall taxonomy.

    Args:
        error: Exception raised by an embedding or LLM client

    Returns:
        A RateLimitError or TransientProviderError for recoverable failures,
        otherwise the original exception unchanged
    """
    if isinstance(error, ChatRecallError):
        return error

    status = _status_code(error)
    if status == 429:
        return RateLimitError(str(error), retry_after=_retry_after(error))
    if status is not None and status >= 500:
        return TransientProviderError(str(error))

    error_type = type(error).__name__
    if any(marker in error_type for marker in ("Timeout", "Connection")):
        return TransientProviderError(str(error))

    return error
