"""
Value types for grants, tokens, scopes and wallet addresses.

Request and response bodies stay plain dictionaries; the types here only
capture what the signing and grant layers need to reason about.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

__all__ = [
    "AccessAction",
    "AccessItem",
    "AccessToken",
    "AccessType",
    "Amount",
    "GrantRequest",
    "GrantState",
    "GrantStatus",
    "InteractRequest",
    "Limits",
    "ScopeDescriptor",
    "WalletAddress",
]


class AccessType(str, Enum):
    INCOMING_PAYMENT = "incoming-payment"
    OUTGOING_PAYMENT = "outgoing-payment"
    QUOTE = "quote"


class AccessAction(str, Enum):
    CREATE = "create"
    READ = "read"
    READ_ALL = "read-all"
    COMPLETE = "complete"
    LIST = "list"
    LIST_ALL = "list-all"


@dataclass(frozen=True)
class Amount:
    value: str
    asset_code: str
    asset_scale: int

    @classmethod
    def from_decimal(
        cls,
        amount: Decimal | str | int,
        asset_code: str,
        asset_scale: int = 2,
    ) -> "Amount":
        """
        Convert a decimal amount into integer base units of ``asset_scale``.

        ``Decimal("12.5")`` with scale 2 becomes ``"1250"``.
        """
        if not asset_code or len(asset_code) != 3:
            raise ValueError(
                f"asset_code must be a 3 character ISO 4217 code, got '{asset_code}'"
            )
        try:
            decimal_amount = Decimal(str(amount))
            quantum = Decimal(1).scaleb(-asset_scale)
            scaled = decimal_amount.quantize(quantum, rounding=ROUND_HALF_UP).scaleb(asset_scale)
        except InvalidOperation as exc:
            raise ValueError(f"Amount {amount!r} is not a valid decimal number") from exc
        if scaled <= 0:
            raise ValueError("Amount must be greater than zero")
        return cls(value=str(int(scaled)), asset_code=asset_code, asset_scale=asset_scale)

    def as_decimal(self) -> Decimal:
        return Decimal(self.value).scaleb(-self.asset_scale)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "assetCode": self.asset_code,
            "assetScale": self.asset_scale,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Amount":
        return cls(
            value=str(payload["value"]),
            asset_code=payload["assetCode"],
            asset_scale=int(payload["assetScale"]),
        )


@dataclass(frozen=True)
class Limits:
    receiver: Optional[str] = None
    debit_amount: Optional[Amount] = None
    receive_amount: Optional[Amount] = None
    interval: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.receiver is not None:
            payload["receiver"] = self.receiver
        if self.debit_amount is not None:
            payload["debitAmount"] = self.debit_amount.to_payload()
        if self.receive_amount is not None:
            payload["receiveAmount"] = self.receive_amount.to_payload()
        if self.interval is not None:
            payload["interval"] = self.interval
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Limits":
        debit = payload.get("debitAmount")
        receive = payload.get("receiveAmount")
        return cls(
            receiver=payload.get("receiver"),
            debit_amount=Amount.from_payload(debit) if debit else None,
            receive_amount=Amount.from_payload(receive) if receive else None,
            interval=payload.get("interval"),
        )


@dataclass(frozen=True)
class AccessItem:
    """One requested (or granted) access right: a resource type plus actions."""

    type: AccessType
    actions: Tuple[AccessAction, ...]
    identifier: Optional[str] = None
    limits: Optional[Limits] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", AccessType(self.type))
        actions = tuple(dict.fromkeys(AccessAction(action) for action in self.actions))
        if not actions:
            raise ValueError("An access item needs at least one action")
        object.__setattr__(self, "actions", actions)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type.value,
            "actions": [action.value for action in self.actions],
        }
        if self.identifier is not None:
            payload["identifier"] = self.identifier
        if self.limits is not None:
            payload["limits"] = self.limits.to_payload()
        return payload

    def normalized(self) -> Dict[str, Any]:
        payload = self.to_payload()
        payload["actions"] = sorted(payload["actions"])
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AccessItem":
        limits = payload.get("limits")
        return cls(
            type=AccessType(payload["type"]),
            actions=tuple(payload.get("actions", ())),
            identifier=payload.get("identifier"),
            limits=Limits.from_payload(limits) if limits else None,
        )


@dataclass(frozen=True)
class InteractRequest:
    """Redirect interaction: where the resource owner is sent back to, and our nonce."""

    finish_uri: Optional[str] = None
    nonce: Optional[str] = None
    start: Tuple[str, ...] = ("redirect",)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"start": list(self.start)}
        if self.finish_uri is not None:
            payload["finish"] = {
                "method": "redirect",
                "uri": self.finish_uri,
                "nonce": self.nonce,
            }
        return payload


@dataclass(frozen=True)
class GrantRequest:
    access: Tuple[AccessItem, ...]
    client: str
    interact: Optional[InteractRequest] = None

    def __post_init__(self) -> None:
        if not self.access:
            raise ValueError("A grant request needs at least one access item")
        if not self.client:
            raise ValueError("A grant request needs the client wallet address")
        object.__setattr__(self, "access", tuple(self.access))

    @classmethod
    def build(
        cls,
        client: str,
        access_type: AccessType | str,
        actions: Iterable[AccessAction | str],
        *,
        identifier: Optional[str] = None,
        limits: Optional[Limits] = None,
        interact: Optional[InteractRequest] = None,
    ) -> "GrantRequest":
        item = AccessItem(
            type=AccessType(access_type),
            actions=tuple(AccessAction(action) for action in actions),
            identifier=identifier,
            limits=limits,
        )
        return cls(access=(item,), client=client, interact=interact)

    def with_interaction(self, finish_uri: str, nonce: str) -> "GrantRequest":
        return replace(self, interact=InteractRequest(finish_uri=finish_uri, nonce=nonce))


@dataclass(frozen=True)
class ScopeDescriptor:
    """
    The access being asked of one authorization server.

    :attr:`key` is the normalized form used to cache tokens: action order
    and duplicates do not matter, interaction details are ignored.
    """

    auth_server: str
    grant: GrantRequest

    @property
    def key(self) -> str:
        normalized = {
            "auth_server": self.auth_server.rstrip("/"),
            "client": self.grant.client,
            "access": sorted(
                (item.normalized() for item in self.grant.access),
                key=lambda item: json.dumps(item, sort_keys=True),
            ),
        }
        return json.dumps(normalized, sort_keys=True, separators=(",", ":"))

    @property
    def label(self) -> str:
        kinds = ",".join(
            "%s:%s" % (item.type.value, "+".join(sorted(a.value for a in item.actions)))
            for item in self.grant.access
        )
        return f"{self.auth_server} [{kinds}]"


@dataclass(frozen=True)
class AccessToken:
    """
    A bearer token issued by the authorization server.

    ``expires_at`` is a monotonic-clock instant; ``None`` means the server
    gave no expiry. ``rotation_token`` and ``manage_url`` are present when
    the token can be rotated, and are single-use.
    """

    value: str = field(repr=False)
    access: Tuple[AccessItem, ...] = ()
    expires_at: Optional[float] = None
    manage_url: Optional[str] = None
    rotation_token: Optional[str] = field(default=None, repr=False)

    @property
    def can_rotate(self) -> bool:
        return bool(self.manage_url and self.rotation_token)

    def is_expired(self, now: float, leeway: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        return now + leeway >= self.expires_at

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: float) -> "AccessToken":
        expires_in = payload.get("expires_in")
        manage = payload.get("manage")
        return cls(
            value=payload["value"],
            access=tuple(AccessItem.from_payload(item) for item in payload.get("access", ())),
            expires_at=now + float(expires_in) if expires_in is not None else None,
            manage_url=manage,
            rotation_token=payload["value"] if manage else None,
        )


class GrantStatus(str, Enum):
    PENDING = "pending"
    AWAITING_INTERACTION = "awaiting-interaction"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


TERMINAL_STATUSES = frozenset({GrantStatus.DENIED, GrantStatus.EXPIRED, GrantStatus.REVOKED})


@dataclass(frozen=True)
class GrantState:
    """
    Snapshot of one grant negotiation.

    Which fields are meaningful depends on :attr:`status`: the continuation
    fields for every live state, the interaction fields for
    ``AWAITING_INTERACTION`` and :attr:`access_token` for ``GRANTED``.
    """

    status: GrantStatus
    auth_server: str
    continue_uri: Optional[str] = None
    continue_token: Optional[str] = field(default=None, repr=False)
    wait: Optional[int] = None
    not_before: float = 0.0
    interact_redirect: Optional[str] = None
    interact_finish: Optional[str] = None
    access_token: Optional[AccessToken] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_continue(self) -> bool:
        return bool(self.continue_uri and self.continue_token)


@dataclass(frozen=True)
class WalletAddress:
    """
    A wallet address document, as fetched by the caller.

    Discovery itself is a plain GET the caller performs; this only keeps the
    fields the client needs.
    """

    id: str
    auth_server: str
    resource_server: str
    asset_code: str
    asset_scale: int
    public_name: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WalletAddress":
        try:
            return cls(
                id=payload["id"],
                auth_server=payload["authServer"],
                resource_server=payload["resourceServer"],
                asset_code=payload["assetCode"],
                asset_scale=int(payload["assetScale"]),
                public_name=payload.get("publicName"),
            )
        except KeyError as exc:
            raise ValueError(f"Wallet address document is missing '{exc.args[0]}'") from exc
