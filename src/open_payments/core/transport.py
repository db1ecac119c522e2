"""
HTTP transport abstraction and the default ``requests``-backed implementation.

The core never opens sockets itself: every exchange goes through a
:class:`Transport`, which tests replace with a scripted fake.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests

from .errors import OpenPaymentsError, TransportFailure

__all__ = [
    "HttpRequest",
    "HttpResponse",
    "RequestsTransport",
    "Transport",
]

_REDACTED_HEADERS = frozenset({"authorization", "signature"})


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if not self.body:
            return {}
        try:
            return json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise OpenPaymentsError(
                f"Failed to parse JSON from {self.url}: {self.text}",
                status=self.status,
                response_body=self.text,
            ) from exc

    def error(self) -> Dict[str, Any]:
        """The ``error`` object of an error response, or ``{}`` when there is none."""
        try:
            payload = self.json()
        except OpenPaymentsError:
            return {}
        if isinstance(payload, dict):
            error = payload.get("error", payload)
            if isinstance(error, dict):
                return error
            if isinstance(error, str):
                return {"code": error, "description": payload.get("description")}
        return {}


def _format_headers(headers: Mapping[str, str]) -> str:
    lines = []
    for name, value in headers.items():
        shown = "<redacted>" if name.lower() in _REDACTED_HEADERS else value
        lines.append(f"    {name}: {shown}")
    return "\n".join(lines)


def log_request(request: HttpRequest) -> None:
    logging.debug(
        "HTTP Request:  %s %s\n%s\n    body: %s",
        request.method,
        request.url,
        _format_headers(request.headers),
        request.body.decode("utf-8", errors="replace") if request.body else "<no body>",
    )


def log_response(response: HttpResponse) -> None:
    logging.debug(
        "HTTP Response: %s %s\n    body: %s",
        response.status,
        response.url,
        response.text or "<no body>",
    )


class Transport(ABC):
    """Sends one HTTP exchange. Implementations raise :class:`TransportFailure`."""

    @abstractmethod
    def send(self, request: HttpRequest, *, timeout: Optional[float] = None) -> HttpResponse:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RequestsTransport(Transport):
    """
    :class:`Transport` on top of a :class:`requests.Session`.

    The session is shared across threads for connection pooling; redirects
    are never followed because a redirected request would no longer match its
    signature.
    """

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.session = session or requests.Session()
        self.connect_timeout = connect_timeout

    def send(self, request: HttpRequest, *, timeout: Optional[float] = None) -> HttpResponse:
        log_request(request)
        try:
            response = self.session.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                data=request.body,
                timeout=(self.connect_timeout, timeout),
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise TransportFailure(
                f"{request.method} {request.url} failed: {exc}"
            ) from exc

        result = HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content or b"",
            url=request.url,
        )
        log_response(result)
        return result

    def close(self) -> None:
        self.session.close()
