"""
Grant negotiation against an Open Payments authorization server.

:class:`GrantNegotiator` owns the grant state machine::

    (initial) -> PENDING | AWAITING_INTERACTION | GRANTED | DENIED
    PENDING -> PENDING | AWAITING_INTERACTION | GRANTED | DENIED | EXPIRED
    AWAITING_INTERACTION -> AWAITING_INTERACTION | GRANTED | DENIED | EXPIRED
    GRANTED -> GRANTED (rotation) | EXPIRED
    any -> REVOKED

States are immutable snapshots; every transition returns a new
:class:`GrantState`. DENIED, EXPIRED and REVOKED never lead back to GRANTED:
the caller has to start a new grant.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional

from .concurrency import CancellationToken, cancellable_sleep
from .errors import (
    AuthorizationRejected,
    GrantStateError,
    OpenPaymentsError,
    PollTooEarly,
    RequestRejected,
    ServerUnavailable,
)
from .models import AccessToken, GrantRequest, GrantState, GrantStatus
from .payloads import build_continue_payload, build_grant_payload, encode_body
from .signatures import SignableRequest, SignatureEngine
from .transport import HttpRequest, HttpResponse, Transport

__all__ = ["DENIAL_CODES", "GrantNegotiator"]

DENIAL_CODES = frozenset({"request_denied", "user_denied"})

_TRANSITIONS = {
    GrantStatus.PENDING: frozenset(
        {
            GrantStatus.PENDING,
            GrantStatus.AWAITING_INTERACTION,
            GrantStatus.GRANTED,
            GrantStatus.DENIED,
            GrantStatus.EXPIRED,
            GrantStatus.REVOKED,
        }
    ),
    GrantStatus.AWAITING_INTERACTION: frozenset(
        {
            GrantStatus.AWAITING_INTERACTION,
            GrantStatus.GRANTED,
            GrantStatus.DENIED,
            GrantStatus.EXPIRED,
            GrantStatus.REVOKED,
        }
    ),
    GrantStatus.GRANTED: frozenset(
        {GrantStatus.GRANTED, GrantStatus.EXPIRED, GrantStatus.REVOKED}
    ),
    GrantStatus.DENIED: frozenset({GrantStatus.REVOKED}),
    GrantStatus.EXPIRED: frozenset({GrantStatus.REVOKED}),
    GrantStatus.REVOKED: frozenset(),
}


class GrantNegotiator:
    """
    Requests, continues, rotates and revokes grants.

    Every call to the authorization server is signed with ``signer``.
    ``clock`` must be monotonic; wait hints and token expiry are measured
    against it. ``max_concurrent_requests`` caps how many requests are on
    the wire at once; waits between polls do not count against it.
    """

    def __init__(
        self,
        signer: SignatureEngine,
        transport: Transport,
        *,
        poll_wait_floor: float = 1.0,
        request_timeout: Optional[float] = 10.0,
        max_concurrent_requests: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float, Optional[CancellationToken]], None] = cancellable_sleep,
    ) -> None:
        self.signer = signer
        self.transport = transport
        self.poll_wait_floor = poll_wait_floor
        self.request_timeout = request_timeout
        self._send_slots = (
            threading.BoundedSemaphore(max_concurrent_requests) if max_concurrent_requests else None
        )
        self._clock = clock
        self._sleep = sleep

    # -- wire ---------------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        token: Optional[str] = None,
    ) -> HttpResponse:
        body = encode_body(payload)
        headers: Dict[str, str] = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"
        if token is not None:
            headers["Authorization"] = f"GNAP {token}"
        signed = self.signer.sign(SignableRequest(method, url, headers, body))
        headers.update(signed.as_dict())
        request = HttpRequest(method, url, headers, body)
        if self._send_slots is None:
            return self.transport.send(request, timeout=self.request_timeout)
        with self._send_slots:
            return self.transport.send(request, timeout=self.request_timeout)

    @staticmethod
    def _is_denial(response: HttpResponse) -> bool:
        return response.error().get("code") in DENIAL_CODES

    @staticmethod
    def _error_for_status(response: HttpResponse, what: str) -> OpenPaymentsError:
        status = response.status
        error = response.error()
        if 500 <= status < 600:
            logging.error("Server error [%s] during %s: %s", status, what, error.get("description"))
            return ServerUnavailable.from_response(status, error, response.text)
        logging.warning("Client error [%s] during %s: %s", status, what, error.get("description"))
        if status in (401, 403):
            return AuthorizationRejected.from_response(status, error, response.text)
        return RequestRejected.from_response(status, error, response.text)

    # -- transitions --------------------------------------------------------

    def _transition(self, state: GrantState, status: GrantStatus, **changes: Any) -> GrantState:
        if status not in _TRANSITIONS[state.status]:
            raise GrantStateError(
                f"Grant at {state.auth_server} cannot go from {state.status.value} to {status.value}"
            )
        updated = replace(state, status=status, **changes)
        if status is not state.status:
            logging.info(
                "Grant at %s moved from %s to %s",
                state.auth_server,
                state.status.value,
                status.value,
            )
        return updated

    def _not_before(self, status: GrantStatus, wait: Optional[int], now: float) -> float:
        hint = float(wait) if wait is not None else 0.0
        if status is GrantStatus.PENDING:
            hint = max(hint, self.poll_wait_floor)
        return now + hint

    def _from_response(
        self,
        previous: Optional[GrantState],
        auth_server: str,
        payload: Mapping[str, Any],
    ) -> GrantState:
        now = self._clock()
        continuation = payload.get("continue") or {}
        continue_uri = continuation.get("uri")
        continue_token = (continuation.get("access_token") or {}).get("value")
        if previous is not None:
            continue_uri = continue_uri or previous.continue_uri
            continue_token = continue_token or previous.continue_token
        wait = continuation.get("wait")
        token_payload = payload.get("access_token")
        interact = payload.get("interact")

        changes: Dict[str, Any] = {
            "continue_uri": continue_uri,
            "continue_token": continue_token,
            "wait": wait,
        }
        if token_payload:
            status = GrantStatus.GRANTED
            changes["access_token"] = AccessToken.from_payload(token_payload, now=now)
        elif interact:
            status = GrantStatus.AWAITING_INTERACTION
            changes["interact_redirect"] = interact.get("redirect")
            changes["interact_finish"] = interact.get("finish")
        elif continuation and previous is not None and previous.status is GrantStatus.AWAITING_INTERACTION:
            status = GrantStatus.AWAITING_INTERACTION
        elif continuation:
            status = GrantStatus.PENDING
        else:
            status = GrantStatus.DENIED
        changes["not_before"] = self._not_before(status, wait, now)

        if previous is None:
            state = GrantState(status=status, auth_server=auth_server, **changes)
            logging.info("Grant at %s started as %s", auth_server, status.value)
            return state
        return self._transition(previous, status, **changes)

    # -- operations ---------------------------------------------------------

    def request_grant(self, auth_server: str, grant: GrantRequest) -> GrantState:
        """
        POST a new grant request and return the resulting state.

        A token in the response yields GRANTED, an ``interact`` block yields
        AWAITING_INTERACTION, a bare continuation yields PENDING.
        """
        logging.info("Requesting grant from %s", auth_server)
        response = self._send("POST", auth_server, payload=build_grant_payload(grant))
        if not response.ok:
            if self._is_denial(response):
                logging.warning("Grant request to %s was denied", auth_server)
                return GrantState(status=GrantStatus.DENIED, auth_server=auth_server)
            raise self._error_for_status(response, "grant request")
        return self._from_response(None, auth_server, response.json())

    def continue_grant(self, state: GrantState, interact_ref: Optional[str] = None) -> GrantState:
        """
        Continue a PENDING or AWAITING_INTERACTION grant.

        Raises :class:`PollTooEarly` without sending anything when the
        server's wait hint has not elapsed yet.
        """
        if state.status not in (GrantStatus.PENDING, GrantStatus.AWAITING_INTERACTION):
            raise GrantStateError(f"Cannot continue a grant that is {state.status.value}")
        if not state.can_continue:
            raise GrantStateError("Grant has no continuation URI or token")

        now = self._clock()
        if now < state.not_before:
            remaining = state.not_before - now
            raise PollTooEarly(
                "Continuation at %s is not allowed for another %.1fs"
                % (state.continue_uri, remaining),
                retry_after=remaining,
            )

        response = self._send(
            "POST",
            state.continue_uri,
            payload=build_continue_payload(interact_ref),
            token=state.continue_token,
        )
        if response.ok:
            return self._from_response(state, state.auth_server, response.json())
        if self._is_denial(response):
            return self._transition(state, GrantStatus.DENIED)
        if response.status in (401, 403):
            logging.warning(
                "Continuation token for %s was rejected [%s]", state.auth_server, response.status
            )
            return self._transition(state, GrantStatus.EXPIRED)
        raise self._error_for_status(response, "grant continuation")

    def poll(
        self,
        state: GrantState,
        *,
        cancel: Optional[CancellationToken] = None,
        interact_ref: Optional[str] = None,
    ) -> GrantState:
        """
        Continue the grant, honouring every wait hint, until it leaves PENDING.
        """
        while True:
            delay = state.not_before - self._clock()
            if delay > 0:
                logging.debug("Waiting %.1fs before continuing grant at %s", delay, state.auth_server)
                self._sleep(delay, cancel)
            if cancel is not None:
                cancel.raise_if_cancelled("grant polling")
            state = self.continue_grant(state, interact_ref)
            if state.status is not GrantStatus.PENDING:
                return state

    def rotate(self, state: GrantState) -> GrantState:
        """
        Exchange the rotation token for a new access token.

        The previous token and its rotation token are discarded: rotation
        tokens are single-use. A rejected rotation moves the grant to EXPIRED.
        """
        token = state.access_token
        if state.status is not GrantStatus.GRANTED or token is None:
            raise GrantStateError(f"Cannot rotate a grant that is {state.status.value}")
        if not token.can_rotate:
            raise GrantStateError("Access token has no rotation token")

        logging.info("Rotating access token at %s", token.manage_url)
        response = self._send("POST", token.manage_url, token=token.rotation_token)
        if response.status in (401, 403):
            logging.warning("Rotation token for %s was rejected [%s]", state.auth_server, response.status)
            return self._transition(state, GrantStatus.EXPIRED, access_token=None)
        if not response.ok:
            raise self._error_for_status(response, "token rotation")

        payload = response.json().get("access_token")
        if not payload:
            raise OpenPaymentsError(
                f"Rotation response from {token.manage_url} carries no access token",
                status=response.status,
                response_body=response.text,
            )
        return self._transition(
            state,
            GrantStatus.GRANTED,
            access_token=AccessToken.from_payload(payload, now=self._clock()),
        )

    def revoke(self, state: GrantState) -> GrantState:
        """
        Revoke the grant. REVOKED is terminal; revoking twice is a no-op.

        Live grants are deleted at their continuation URI. A server that no
        longer knows the grant (401/403/404) counts as revoked; 5xx and
        transport errors are raised.
        """
        if state.status is GrantStatus.REVOKED:
            return state
        if state.can_continue and not state.is_terminal:
            response = self._send("DELETE", state.continue_uri, token=state.continue_token)
            if not response.ok and response.status not in (401, 403, 404):
                raise self._error_for_status(response, "grant revocation")
        return self._transition(state, GrantStatus.REVOKED, access_token=None)

    def check_expiry(self, state: GrantState, leeway: float = 0.0) -> GrantState:
        """
        GRANTED -> EXPIRED when the token is at expiry and cannot be rotated.

        Checked lazily by callers; nothing runs in the background.
        """
        token = state.access_token
        if state.status is not GrantStatus.GRANTED or token is None:
            return state
        if token.is_expired(self._clock(), leeway) and not token.can_rotate:
            return self._transition(state, GrantStatus.EXPIRED, access_token=None)
        return state
