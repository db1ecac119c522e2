"""
Access-token cache shared by every caller of one client.

Tokens are cached per normalized scope key. Fetching, rotating or continuing
a grant for a key is single-flight: concurrent callers for the same key wait
on one operation, callers for different keys never contend. Each operation
runs on its own thread, so a flight parked in an interaction handler or a
poll wait holds nothing another key needs.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .concurrency import CancellationToken, SingleFlight
from .errors import (
    GrantDenied,
    GrantStateError,
    InteractionRequired,
    OpenPaymentsError,
    TokenExpired,
)
from .grants import GrantNegotiator
from .models import AccessToken, GrantState, GrantStatus, ScopeDescriptor

__all__ = ["InteractionHandler", "TokenCacheEntry", "TokenManager"]

# Called with an AWAITING_INTERACTION state; sends the resource owner to
# ``state.interact_redirect`` and returns the ``interact_ref`` from the
# finish redirect, or None if the interaction was abandoned.
InteractionHandler = Callable[[GrantState], Optional[str]]


@dataclass
class TokenCacheEntry:
    scope: ScopeDescriptor
    state: GrantState
    stale: bool = False


class TokenManager:
    def __init__(
        self,
        negotiator: GrantNegotiator,
        *,
        refresh_leeway: float = 5.0,
        interaction_handler: Optional[InteractionHandler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.negotiator = negotiator
        self.refresh_leeway = refresh_leeway
        self.interaction_handler = interaction_handler
        self._clock = clock
        self._closed = False
        self._flights = SingleFlight(self._start_flight)
        self._lock = threading.Lock()
        self._entries: Dict[str, TokenCacheEntry] = {}
        self._generations: Dict[str, int] = {}

    def _start_flight(self, run: Callable[..., None], *args: object) -> None:
        if self._closed:
            raise RuntimeError("TokenManager is closed")
        threading.Thread(target=run, args=args, name="open-payments-grant", daemon=True).start()

    # -- cache helpers ------------------------------------------------------

    def _usable(self, entry: Optional[TokenCacheEntry]) -> Optional[AccessToken]:
        if entry is None or entry.stale or entry.state.status is not GrantStatus.GRANTED:
            return None
        token = entry.state.access_token
        if token is None or token.is_expired(self._clock(), self.refresh_leeway):
            return None
        return token

    def _lookup(self, key: str) -> Optional[TokenCacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def _generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def _store(self, scope: ScopeDescriptor, state: GrantState, generation: int) -> None:
        """
        Cache ``state`` unless the scope was revoked since the flight began.

        A late result is revoked at the server and its waiters get
        :class:`GrantStateError` instead of the token.
        """
        key = scope.key
        with self._lock:
            current = self._generations.get(key, 0) == generation
            if current:
                self._entries[key] = TokenCacheEntry(scope=scope, state=state)
        if current:
            return
        logging.warning("Grant for %s finished after the scope was revoked; revoking it", scope.label)
        try:
            self.negotiator.revoke(state)
        except OpenPaymentsError as exc:
            logging.warning("Failed to revoke grant for %s: %s", scope.label, exc)
        raise GrantStateError(f"Grant for {scope.label} was revoked while in flight", scope_key=key)

    def _evict(self, key: str) -> Optional[TokenCacheEntry]:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._entries.pop(key, None)

    @staticmethod
    def _cancel_token(
        timeout: Optional[float], cancel: Optional[CancellationToken]
    ) -> Optional[CancellationToken]:
        if timeout is not None and cancel is not None:
            raise ValueError("Pass either timeout or cancel, not both")
        if timeout is not None:
            return CancellationToken(timeout)
        return cancel

    # -- public API ---------------------------------------------------------

    def state(self, scope: ScopeDescriptor) -> Optional[GrantState]:
        entry = self._lookup(scope.key)
        return entry.state if entry is not None else None

    def acquire(
        self,
        scope: ScopeDescriptor,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AccessToken:
        """
        Return a valid access token for ``scope``.

        A cached token is returned without blocking. Otherwise the token is
        rotated, or a new grant is negotiated, exactly once no matter how
        many threads ask at the same time. ``timeout``/``cancel`` bound only
        this caller's wait.
        """
        key = scope.key
        token = self._usable(self._lookup(key))
        if token is not None:
            return token

        cancel = self._cancel_token(timeout, cancel)
        try:
            return self._flights.do(
                key,
                lambda flight_cancel: self._refresh(scope, flight_cancel),
                cancel=cancel,
            )
        except OpenPaymentsError as exc:
            if exc.scope_key is None:
                exc.scope_key = key
            raise

    def complete_interaction(
        self,
        scope: ScopeDescriptor,
        interact_ref: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AccessToken:
        """
        Finish a grant that raised :class:`InteractionRequired`, using the
        ``interact_ref`` the resource owner was redirected back with.

        Raises :class:`FlightConflict` while an ``acquire`` for the same
        scope is still running; retry once it has returned.
        """
        key = scope.key
        cancel = self._cancel_token(timeout, cancel)
        try:
            return self._flights.do(
                key,
                lambda flight_cancel: self._finish_interaction(scope, interact_ref, flight_cancel),
                cancel=cancel,
                kind="interaction",
            )
        except OpenPaymentsError as exc:
            if exc.scope_key is None:
                exc.scope_key = key
            raise

    def invalidate(self, scope: ScopeDescriptor, token: Optional[AccessToken] = None) -> bool:
        """
        Mark the cached token for ``scope`` as unusable.

        With ``token`` given, only that exact token is invalidated, so a
        caller holding an old token cannot discard a newer one. Returns
        whether anything was invalidated.
        """
        with self._lock:
            entry = self._entries.get(scope.key)
            if entry is None or entry.state.access_token is None:
                return False
            if token is not None and entry.state.access_token.value != token.value:
                return False
            entry.stale = True
        logging.info("Invalidated cached token for %s", scope.label)
        return True

    def revoke(self, scope: ScopeDescriptor) -> Optional[GrantState]:
        """
        Revoke the grant for ``scope`` and evict it from the cache.

        The entry is evicted even if the revocation request fails.
        """
        entry = self._evict(scope.key)
        if entry is None:
            return None
        logging.info("Revoking grant for %s", scope.label)
        return self.negotiator.revoke(entry.state)

    def close(self, *, revoke: bool = False) -> None:
        """
        Evict every entry, revoking the grants when asked. No new flights
        start afterwards; results of running ones are revoked on arrival.
        """
        with self._lock:
            self._closed = True
            entries = list(self._entries.values())
            for key in list(self._entries):
                self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.clear()
        if revoke:
            for entry in entries:
                try:
                    self.negotiator.revoke(entry.state)
                except OpenPaymentsError as exc:
                    logging.warning("Failed to revoke grant for %s: %s", entry.scope.label, exc)

    # -- flights ------------------------------------------------------------

    def _refresh(self, scope: ScopeDescriptor, cancel: CancellationToken) -> AccessToken:
        cancel.raise_if_cancelled(f"token refresh for {scope.label}")
        key = scope.key
        generation = self._generation(key)
        entry = self._lookup(key)
        token = self._usable(entry)
        if token is not None:
            return token

        state = entry.state if entry is not None else None
        if state is not None and state.status is GrantStatus.AWAITING_INTERACTION:
            return self._interact(scope, state, cancel, generation)

        if state is not None and state.status is GrantStatus.GRANTED:
            if state.access_token is not None and state.access_token.can_rotate:
                state = self.negotiator.rotate(state)
                if state.status is GrantStatus.GRANTED:
                    logging.info("Rotated access token for %s", scope.label)
            else:
                state = self.negotiator.check_expiry(state, self.refresh_leeway)

        if state is None or state.status is not GrantStatus.GRANTED or (
            entry is not None and entry.stale and state is entry.state
        ):
            state = self.negotiator.request_grant(scope.auth_server, scope.grant)
        return self._settle(scope, state, cancel, generation)

    def _finish_interaction(
        self, scope: ScopeDescriptor, interact_ref: str, cancel: CancellationToken
    ) -> AccessToken:
        cancel.raise_if_cancelled(f"interaction finish for {scope.label}")
        generation = self._generation(scope.key)
        entry = self._lookup(scope.key)
        if entry is None or entry.state.status is not GrantStatus.AWAITING_INTERACTION:
            raise GrantStateError(f"No grant awaiting interaction for {scope.label}")
        state = self.negotiator.poll(entry.state, cancel=cancel, interact_ref=interact_ref)
        return self._settle(scope, state, cancel, generation)

    def _interact(
        self,
        scope: ScopeDescriptor,
        state: GrantState,
        cancel: CancellationToken,
        generation: int,
    ) -> AccessToken:
        interact_ref = None
        if self.interaction_handler is not None:
            interact_ref = self.interaction_handler(state)
        if interact_ref is None:
            self._store(scope, state, generation)
            raise InteractionRequired(
                f"Grant for {scope.label} needs interaction at {state.interact_redirect}",
                state=state,
                scope_key=scope.key,
            )
        state = self.negotiator.poll(state, cancel=cancel, interact_ref=interact_ref)
        return self._settle(scope, state, cancel, generation)

    def _settle(
        self,
        scope: ScopeDescriptor,
        state: GrantState,
        cancel: CancellationToken,
        generation: int,
    ) -> AccessToken:
        if state.status is GrantStatus.PENDING:
            state = self.negotiator.poll(state, cancel=cancel)
            return self._settle(scope, state, cancel, generation)
        if state.status is GrantStatus.AWAITING_INTERACTION:
            return self._interact(scope, state, cancel, generation)
        if state.status is GrantStatus.GRANTED:
            if state.access_token is None:
                raise GrantStateError(f"Granted state for {scope.label} carries no token")
            self._store(scope, state, generation)
            return state.access_token
        if state.status is GrantStatus.DENIED:
            self._evict(scope.key)
            raise GrantDenied(f"Grant for {scope.label} was denied", scope_key=scope.key)
        if state.status is GrantStatus.EXPIRED:
            self._evict(scope.key)
            raise TokenExpired(
                f"Grant for {scope.label} expired before a token was issued",
                scope_key=scope.key,
            )
        if state.status is GrantStatus.REVOKED:
            self._evict(scope.key)
            raise GrantStateError(f"Grant for {scope.label} was revoked", scope_key=scope.key)
        raise GrantStateError(f"Unknown grant status {state.status!r}")
