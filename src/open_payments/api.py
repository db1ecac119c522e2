"""
Public, high-level helpers for building an Open Payments client.
"""

from __future__ import annotations

from typing import Mapping, Optional

import requests

from .core.client import OpenPaymentsClient
from .core.config import ClientConfig, ClientParameters, load_client_config
from .core.keys import KeyStore
from .core.tokens import InteractionHandler
from .core.transport import Transport

__all__ = ["create_client"]


def create_client(
    *,
    config: Optional[ClientConfig] = None,
    key_store: Optional[KeyStore] = None,
    transport: Optional[Transport] = None,
    session: Optional[requests.Session] = None,
    interaction_handler: Optional[InteractionHandler] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[ClientParameters] = None,
    wallet_address: Optional[str] = None,
    key_id: Optional[str] = None,
    private_key: Optional[str] = None,
    private_key_path: Optional[str] = None,
    request_timeout_seconds: Optional[float | str] = None,
    connect_timeout_seconds: Optional[float | str] = None,
    max_retries: Optional[int | str] = None,
    backoff_base_seconds: Optional[float | str] = None,
    backoff_max_seconds: Optional[float | str] = None,
    poll_wait_floor_seconds: Optional[float | str] = None,
    token_refresh_leeway_seconds: Optional[float | str] = None,
    transaction_expiration_seconds: Optional[int | str] = None,
    max_concurrent_grants: Optional[int | str] = None,
) -> OpenPaymentsClient:
    """
    Construct an :class:`OpenPaymentsClient`.

    Callers can either supply a ready-made :class:`ClientConfig` or let the
    helper assemble one from environment data.
    """
    if config is not None:
        extras = (
            overrides,
            base,
            parameters,
            wallet_address,
            key_id,
            private_key,
            private_key_path,
            request_timeout_seconds,
            connect_timeout_seconds,
            max_retries,
            backoff_base_seconds,
            backoff_max_seconds,
            poll_wait_floor_seconds,
            token_refresh_leeway_seconds,
            transaction_expiration_seconds,
            max_concurrent_grants,
        )
        if any(item is not None and item != {} for item in extras):
            raise ValueError(
                "Provide either a pre-built ClientConfig or individual parameters, not both."
            )
        cfg = config
    else:
        cfg = load_client_config(
            env_file=env_file,
            overrides=overrides,
            base=base,
            parameters=parameters,
            wallet_address=wallet_address,
            key_id=key_id,
            private_key=private_key,
            private_key_path=private_key_path,
            request_timeout_seconds=request_timeout_seconds,
            connect_timeout_seconds=connect_timeout_seconds,
            max_retries=max_retries,
            backoff_base_seconds=backoff_base_seconds,
            backoff_max_seconds=backoff_max_seconds,
            poll_wait_floor_seconds=poll_wait_floor_seconds,
            token_refresh_leeway_seconds=token_refresh_leeway_seconds,
            transaction_expiration_seconds=transaction_expiration_seconds,
            max_concurrent_grants=max_concurrent_grants,
        )
    return OpenPaymentsClient(
        cfg,
        key_store=key_store,
        transport=transport,
        session=session,
        interaction_handler=interaction_handler,
    )
