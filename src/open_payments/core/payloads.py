"""
Helpers for constructing the JSON bodies sent to authorization and resource servers.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .models import Amount, GrantRequest

__all__ = [
    "build_continue_payload",
    "build_grant_payload",
    "build_incoming_payment_payload",
    "build_outgoing_payment_payload",
    "build_quote_payload",
    "encode_body",
]


def encode_body(payload: Optional[Mapping[str, Any]]) -> Optional[bytes]:
    """
    Serialize ``payload`` once into the exact bytes that are signed and sent.
    """
    if payload is None:
        return None
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def build_grant_payload(grant: GrantRequest) -> Dict[str, Any]:
    """Body of the initial grant request POSTed to the authorization server."""
    payload: Dict[str, Any] = {
        "access_token": {"access": [item.to_payload() for item in grant.access]},
        "client": grant.client,
    }
    if grant.interact is not None:
        payload["interact"] = grant.interact.to_payload()
    return payload


def build_continue_payload(interact_ref: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if interact_ref is None:
        return None
    if not interact_ref.strip():
        raise ValueError("interact_ref must not be empty")
    return {"interact_ref": interact_ref}


def build_incoming_payment_payload(
    wallet_address: str,
    amount: Optional[Amount] = None,
    *,
    expires_in: Optional[int] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"walletAddress": wallet_address}
    if amount is not None:
        payload["incomingAmount"] = amount.to_payload()
    if expires_in is not None:
        if expires_in <= 0:
            raise ValueError("expires_in must be greater than zero")
        now = time.time() if now is None else now
        payload["expiresAt"] = _timestamp(now + expires_in)
    if metadata:
        payload["metadata"] = dict(metadata)
    return payload


def build_quote_payload(
    wallet_address: str,
    receiver: str,
    *,
    method: str = "ilp",
    debit_amount: Optional[Amount] = None,
    receive_amount: Optional[Amount] = None,
) -> Dict[str, Any]:
    if debit_amount is not None and receive_amount is not None:
        raise ValueError("A quote takes either a debit amount or a receive amount, not both")
    payload: Dict[str, Any] = {
        "walletAddress": wallet_address,
        "receiver": receiver,
        "method": method,
    }
    if debit_amount is not None:
        payload["debitAmount"] = debit_amount.to_payload()
    if receive_amount is not None:
        payload["receiveAmount"] = receive_amount.to_payload()
    return payload


def build_outgoing_payment_payload(
    wallet_address: str,
    quote_id: str,
    *,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"walletAddress": wallet_address, "quoteId": quote_id}
    if metadata:
        payload["metadata"] = dict(metadata)
    return payload
