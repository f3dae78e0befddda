"""Service error hierarchy for generation tracking.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (rejected requests, bad payloads)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - Database connection drops
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Generator rejected the prompt (400, 422)
    - Authentication failures (401, 403)
    - Malformed payloads
    """

    pass


# Automation bridge errors
class GeneratorError(ServiceError):
    """Base exception for prompt re-issue errors."""

    pass


class GeneratorTransportError(TransientError, GeneratorError):
    """Network timeout, connection failure or bridge unavailable."""

    pass


class GeneratorRejectedError(PermanentError, GeneratorError):
    """Bridge refused the prompt (4xx)."""

    pass


# History storage errors
class StorageError(TransientError):
    """A history store read or write failed."""

    pass


# Stream errors
class StreamParseError(PermanentError):
    """A stream record could not be decoded."""

    pass
