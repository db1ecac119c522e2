"""
Signed, token-authorized request execution with retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .concurrency import CancellationToken, cancellable_sleep
from .errors import (
    AuthorizationRejected,
    OpenPaymentsError,
    OperationFailed,
    RequestRejected,
    ServerUnavailable,
    TransportFailure,
)
from .models import AccessToken, ScopeDescriptor
from .payloads import encode_body
from .signatures import SignableRequest, SignatureEngine
from .tokens import TokenManager
from .transport import HttpRequest, HttpResponse, Transport

__all__ = ["Operation", "RequestDispatcher"]

NON_REPEATABLE_METHODS = frozenset({"POST", "PATCH"})


@dataclass(frozen=True)
class Operation:
    """
    One resource-server call.

    ``scope`` names the access the call needs; ``None`` sends the request
    signed but without a bearer token. POST and PATCH are only retried after
    transport or server failures when an ``idempotency_key`` is given.
    """

    method: str
    url: str
    scope: Optional[ScopeDescriptor] = None
    payload: Optional[Mapping[str, Any]] = None
    idempotency_key: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def repeatable(self) -> bool:
        return self.method.upper() not in NON_REPEATABLE_METHODS or bool(self.idempotency_key)


class RequestDispatcher:
    def __init__(
        self,
        signer: SignatureEngine,
        tokens: TokenManager,
        transport: Transport,
        *,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        request_timeout: Optional[float] = 10.0,
        sleep: Callable[[float, Optional[CancellationToken]], None] = cancellable_sleep,
    ) -> None:
        self.signer = signer
        self.tokens = tokens
        self.transport = transport
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.request_timeout = request_timeout
        self._sleep = sleep

    def backoff_delay(self, failures: int) -> float:
        return min(self.backoff_base * (2 ** max(0, failures - 1)), self.backoff_max)

    def _build(
        self,
        operation: Operation,
        body: Optional[bytes],
        token: Optional[AccessToken],
    ) -> HttpRequest:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"
        if token is not None:
            headers["Authorization"] = f"GNAP {token.value}"
        if operation.idempotency_key:
            headers["Idempotency-Key"] = operation.idempotency_key
        method = operation.method.upper()
        signed = self.signer.sign(SignableRequest(method, operation.url, headers, body))
        headers.update(signed.as_dict())
        return HttpRequest(method, operation.url, headers, body)

    def execute(
        self,
        operation: Operation,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> HttpResponse:
        """
        Acquire a token, sign, send, and classify the outcome.

        A 401/403 invalidates the token and rebuilds the whole signed request
        once with a fresh one; a second rejection raises
        :class:`AuthorizationRejected`. Transport failures and 5xx responses
        are retried with exponential backoff when the operation is
        repeatable, then raised as :class:`OperationFailed`.
        """
        scope_key = operation.scope.key if operation.scope is not None else None
        body = encode_body(operation.payload)
        max_failures = 1 + self.max_retries if operation.repeatable else 1
        attempts = 0
        failures = 0
        auth_retried = False

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled(f"{operation.method} {operation.url}")
            attempts += 1
            token: Optional[AccessToken] = None
            try:
                if operation.scope is not None:
                    token = self.tokens.acquire(operation.scope, cancel=cancel)
                request = self._build(operation, body, token)
                timeout = self.request_timeout if operation.timeout is None else operation.timeout
                response = self.transport.send(request, timeout=timeout)
            except (TransportFailure, ServerUnavailable) as exc:
                last_error: OpenPaymentsError = exc
                logging.warning(
                    "%s %s failed on attempt %d: %s", operation.method, operation.url, attempts, exc
                )
            else:
                if response.ok:
                    return response

                status = response.status
                error = response.error()
                if status in (401, 403) and operation.scope is not None and not auth_retried:
                    logging.warning(
                        "%s %s was rejected [%s]; retrying with a fresh token",
                        operation.method,
                        operation.url,
                        status,
                    )
                    auth_retried = True
                    self.tokens.invalidate(operation.scope, token)
                    continue
                if status in (401, 403):
                    raise AuthorizationRejected.from_response(
                        status, error, response.text, scope_key=scope_key, attempts=attempts
                    )
                if 500 <= status < 600:
                    logging.error("Server error [%s]: %s", status, error.get("description"))
                    last_error = ServerUnavailable.from_response(
                        status, error, response.text, scope_key=scope_key, attempts=attempts
                    )
                else:
                    logging.warning("Client error [%s]: %s", status, error.get("description"))
                    raise RequestRejected.from_response(
                        status, error, response.text, scope_key=scope_key, attempts=attempts
                    )

            failures += 1
            if failures >= max_failures:
                raise OperationFailed(
                    "%s %s failed after %d attempt(s): %s"
                    % (operation.method, operation.url, attempts, last_error),
                    last_error=last_error,
                    scope_key=scope_key,
                    status=last_error.status,
                    attempts=attempts,
                ) from last_error

            delay = self.backoff_delay(failures)
            logging.info("Retrying %s %s in %.2fs", operation.method, operation.url, delay)
            self._sleep(delay, cancel)

    def execute_json(
        self,
        operation: Operation,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> Any:
        return self.execute(operation, cancel=cancel).json()
