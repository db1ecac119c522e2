"""
Exception taxonomy shared by the signing, grant and dispatch layers.

Every error surfaced to callers carries enough context (scope key, last HTTP
status, attempt count) to tell "fix your credentials" from "try again later"
from "the grant was denied".
"""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "AuthorizationRejected",
    "FlightConflict",
    "GrantDenied",
    "GrantStateError",
    "InteractionRequired",
    "KeyUnavailable",
    "OpenPaymentsError",
    "OperationCancelled",
    "OperationFailed",
    "PollTooEarly",
    "RequestRejected",
    "ServerUnavailable",
    "SignatureFailure",
    "TokenExpired",
    "TransportFailure",
]


class OpenPaymentsError(Exception):
    """Base class for every error raised by the client core."""

    def __init__(
        self,
        message: str,
        *,
        scope_key: Optional[str] = None,
        status: Optional[int] = None,
        attempts: Optional[int] = None,
        code: Optional[str] = None,
        description: Optional[str] = None,
        response_body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.scope_key = scope_key
        self.status = status
        self.attempts = attempts
        self.code = code
        self.description = description
        self.response_body = response_body

    @classmethod
    def from_response(
        cls,
        status: int,
        error: Optional[dict],
        body: Optional[str],
        **context: Any,
    ) -> "OpenPaymentsError":
        """
        Build an exception from an HTTP error response.

        The message follows the ``[status] (code) description`` layout so log
        lines from different layers read the same way.
        """
        error = error or {}
        code = error.get("code") or None
        description = error.get("description") or None
        message = "[%d] (%s) %s" % (
            status,
            code or ">no error code<",
            description or ">no error description<",
        )
        return cls(
            message,
            status=status,
            code=code,
            description=description,
            response_body=body if body else "[no body]",
            **context,
        )


class KeyUnavailable(OpenPaymentsError):
    """The signing key could not be loaded or is malformed."""


class SignatureFailure(OpenPaymentsError):
    """Signing failed or a covered component was missing."""


class PollTooEarly(OpenPaymentsError):
    """A continuation was attempted before the server's wait hint elapsed."""

    def __init__(self, message: str, *, retry_after: float, **context: Any) -> None:
        super().__init__(message, **context)
        self.retry_after = retry_after


class GrantDenied(OpenPaymentsError):
    """The authorization server (or the resource owner) denied the grant."""


class GrantStateError(OpenPaymentsError):
    """An operation was attempted on a grant in a state that does not allow it."""


class FlightConflict(GrantStateError):
    """A different grant operation for the same scope is already running."""


class InteractionRequired(OpenPaymentsError):
    """The grant needs the resource owner to complete an interactive redirect."""

    def __init__(self, message: str, *, state: Any, **context: Any) -> None:
        super().__init__(message, **context)
        self.state = state

    @property
    def redirect_uri(self) -> Optional[str]:
        return getattr(self.state, "interact_redirect", None)


class TokenExpired(OpenPaymentsError):
    """The access token (or its continuation credential) is no longer valid."""


class AuthorizationRejected(OpenPaymentsError):
    """The resource server rejected the request even with a fresh token."""


class TransportFailure(OpenPaymentsError):
    """The HTTP transport could not complete the exchange."""


class ServerUnavailable(OpenPaymentsError):
    """The server answered with a 5xx status."""


class RequestRejected(OpenPaymentsError):
    """The server rejected the request with a non-authorization 4xx status."""


class OperationFailed(OpenPaymentsError):
    """Retries were exhausted; ``last_error`` holds the final underlying cause."""

    def __init__(
        self,
        message: str,
        *,
        last_error: Optional[BaseException] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.last_error = last_error


class OperationCancelled(OpenPaymentsError):
    """The caller cancelled the operation or its timeout elapsed."""
