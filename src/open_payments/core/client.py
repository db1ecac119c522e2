"""
High-level Open Payments client.
"""

from __future__ import annotations

import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import requests

from .concurrency import CancellationToken, cancellable_sleep
from .config import ClientConfig
from .dispatcher import Operation, RequestDispatcher
from .grants import GrantNegotiator
from .keys import KeyStore
from .models import (
    AccessAction,
    AccessToken,
    AccessType,
    Amount,
    GrantRequest,
    GrantState,
    InteractRequest,
    Limits,
    ScopeDescriptor,
    WalletAddress,
)
from .payloads import (
    build_incoming_payment_payload,
    build_outgoing_payment_payload,
    build_quote_payload,
)
from .signatures import SignatureEngine
from .tokens import InteractionHandler, TokenManager
from .transport import RequestsTransport, Transport

__all__ = ["OpenPaymentsClient", "join_url"]

INCOMING_PAYMENT_ACTIONS = (AccessAction.CREATE, AccessAction.READ, AccessAction.COMPLETE)
QUOTE_ACTIONS = (AccessAction.CREATE, AccessAction.READ)
OUTGOING_PAYMENT_ACTIONS = (AccessAction.CREATE, AccessAction.READ)


def join_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")


class OpenPaymentsClient:
    """
    Signs requests, negotiates grants and caches tokens for one client
    wallet address. Safe to share between threads.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        key_store: Optional[KeyStore] = None,
        transport: Optional[Transport] = None,
        session: Optional[requests.Session] = None,
        interaction_handler: Optional[InteractionHandler] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float, Optional[CancellationToken]], None] = cancellable_sleep,
    ) -> None:
        if transport is not None and session is not None:
            raise ValueError("Provide either a transport or a session, not both.")
        self.config = config
        self.key_store = key_store or config.load_key_store()
        self.transport = transport or RequestsTransport(
            session=session, connect_timeout=config.connect_timeout_seconds
        )
        self.signer = SignatureEngine(self.key_store)
        self.negotiator = GrantNegotiator(
            self.signer,
            self.transport,
            poll_wait_floor=config.poll_wait_floor_seconds,
            request_timeout=config.request_timeout_seconds,
            max_concurrent_requests=config.max_concurrent_grants,
            clock=clock,
            sleep=sleep,
        )
        self.tokens = TokenManager(
            self.negotiator,
            refresh_leeway=config.token_refresh_leeway_seconds,
            interaction_handler=interaction_handler,
            clock=clock,
        )
        self.dispatcher = RequestDispatcher(
            self.signer,
            self.tokens,
            self.transport,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
            request_timeout=config.request_timeout_seconds,
            sleep=sleep,
        )

    def __enter__(self) -> "OpenPaymentsClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- grants -------------------------------------------------------------

    def scope(
        self,
        auth_server: str,
        access_type: AccessType | str,
        actions: Iterable[AccessAction | str],
        *,
        identifier: Optional[str] = None,
        limits: Optional[Limits] = None,
        interact: Optional[InteractRequest] = None,
    ) -> ScopeDescriptor:
        grant = GrantRequest.build(
            self.config.wallet_address,
            access_type,
            actions,
            identifier=identifier,
            limits=limits,
            interact=interact,
        )
        return ScopeDescriptor(auth_server=auth_server, grant=grant)

    def request_grant(self, scope: ScopeDescriptor) -> GrantState:
        """Send one grant request, bypassing the token cache."""
        return self.negotiator.request_grant(scope.auth_server, scope.grant)

    def continue_grant(self, state: GrantState, interact_ref: Optional[str] = None) -> GrantState:
        return self.negotiator.continue_grant(state, interact_ref)

    def acquire_token(
        self,
        scope: ScopeDescriptor,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AccessToken:
        return self.tokens.acquire(scope, timeout=timeout, cancel=cancel)

    def complete_interaction(
        self,
        scope: ScopeDescriptor,
        interact_ref: str,
        *,
        timeout: Optional[float] = None,
    ) -> AccessToken:
        """
        Finish an interactive grant after the resource owner was redirected
        back with ``interact_ref``. The token is cached for ``scope``.
        """
        return self.tokens.complete_interaction(scope, interact_ref, timeout=timeout)

    def revoke(self, scope: ScopeDescriptor) -> Optional[GrantState]:
        return self.tokens.revoke(scope)

    # -- resources ----------------------------------------------------------

    def incoming_payment_scope(self, receiver: WalletAddress) -> ScopeDescriptor:
        return self.scope(receiver.auth_server, AccessType.INCOMING_PAYMENT, INCOMING_PAYMENT_ACTIONS)

    def quote_scope(self, sender: WalletAddress) -> ScopeDescriptor:
        return self.scope(sender.auth_server, AccessType.QUOTE, QUOTE_ACTIONS)

    def outgoing_payment_scope(
        self,
        sender: WalletAddress,
        quote: Mapping[str, Any],
        *,
        finish_uri: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> ScopeDescriptor:
        """
        Interactive scope for paying ``quote`` from ``sender``, limited to the
        quote's debit amount.

        The interaction details do not take part in the cache key, so the
        same scope can be rebuilt later to finish the interaction.
        """
        try:
            debit_amount = Amount.from_payload(quote["debitAmount"])
        except KeyError as exc:
            raise ValueError("Quote is missing 'debitAmount'") from exc
        interact = InteractRequest(
            finish_uri=finish_uri,
            nonce=nonce or (secrets.token_urlsafe(16) if finish_uri else None),
        )
        return self.scope(
            sender.auth_server,
            AccessType.OUTGOING_PAYMENT,
            OUTGOING_PAYMENT_ACTIONS,
            identifier=sender.id,
            limits=Limits(debit_amount=debit_amount),
            interact=interact,
        )

    def create_incoming_payment(
        self,
        receiver: WalletAddress,
        amount: Optional[Decimal | str | int] = None,
        *,
        expires_in: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Create an incoming payment on ``receiver``'s resource server.

        ``amount`` is in major units of the receiver's asset; omit it for an
        open-ended payment. The payment expires after ``expires_in`` seconds,
        defaulting to the configured transaction expiration.
        """
        incoming_amount = None
        if amount is not None:
            incoming_amount = Amount.from_decimal(
                amount, receiver.asset_code, receiver.asset_scale
            )
        payload = build_incoming_payment_payload(
            receiver.id,
            incoming_amount,
            expires_in=expires_in or self.config.transaction_expiration_seconds,
            metadata=metadata,
        )
        url = join_url(receiver.resource_server, "incoming-payments")
        logging.info("Creating incoming payment at %s", url)
        return self.dispatcher.execute_json(
            Operation(
                "POST",
                url,
                scope=self.incoming_payment_scope(receiver),
                payload=payload,
                idempotency_key=idempotency_key,
            ),
            cancel=cancel,
        )

    def get_incoming_payment(
        self,
        receiver: WalletAddress,
        url: str,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        logging.info("Fetching incoming payment %s", url)
        return self.dispatcher.execute_json(
            Operation("GET", url, scope=self.incoming_payment_scope(receiver)),
            cancel=cancel,
        )

    def create_quote(
        self,
        sender: WalletAddress,
        receiver_url: str,
        *,
        method: str = "ilp",
        debit_amount: Optional[Amount] = None,
        receive_amount: Optional[Amount] = None,
        idempotency_key: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        payload = build_quote_payload(
            sender.id,
            receiver_url,
            method=method,
            debit_amount=debit_amount,
            receive_amount=receive_amount,
        )
        url = join_url(sender.resource_server, "quotes")
        logging.info("Requesting quote for %s at %s", receiver_url, url)
        return self.dispatcher.execute_json(
            Operation(
                "POST",
                url,
                scope=self.quote_scope(sender),
                payload=payload,
                idempotency_key=idempotency_key,
            ),
            cancel=cancel,
        )

    def create_outgoing_payment(
        self,
        sender: WalletAddress,
        quote: Mapping[str, Any],
        *,
        idempotency_key: str,
        finish_uri: Optional[str] = None,
        nonce: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Pay ``quote`` from ``sender``.

        The grant needs the resource owner's consent. Without an interaction
        handler this raises :class:`InteractionRequired`; redirect the owner
        to its ``redirect_uri``, call :meth:`complete_interaction` with the
        ``interact_ref`` and call this method again with the same
        ``idempotency_key``.
        """
        if not idempotency_key:
            raise ValueError("Outgoing payments require an idempotency key")
        try:
            quote_id = quote["id"]
        except KeyError as exc:
            raise ValueError("Quote is missing 'id'") from exc

        scope = self.outgoing_payment_scope(sender, quote, finish_uri=finish_uri, nonce=nonce)
        payload = build_outgoing_payment_payload(sender.id, quote_id, metadata=metadata)
        url = join_url(sender.resource_server, "outgoing-payments")
        logging.info("Creating outgoing payment for quote %s at %s", quote_id, url)
        return self.dispatcher.execute_json(
            Operation("POST", url, scope=scope, payload=payload, idempotency_key=idempotency_key),
            cancel=cancel,
        )

    def close(self, *, revoke: bool = False) -> None:
        self.tokens.close(revoke=revoke)
        self.transport.close()
