from decimal import Decimal

import pytest

from open_payments.core.models import (
    AccessAction,
    AccessToken,
    AccessType,
    Amount,
    GrantRequest,
    InteractRequest,
    ScopeDescriptor,
    WalletAddress,
)
from open_payments.core.payloads import build_quote_payload, encode_body

from support import AS_URL, CLIENT_WALLET


@pytest.mark.parametrize(
    "amount, scale, expected",
    [(Decimal("12.5"), 2, "1250"), ("0.005", 2, "1"), (3, 0, "3"), ("1.23456789", 9, "1234567890")],
)
def test_amount_from_decimal(amount, scale, expected):
    assert Amount.from_decimal(amount, "USD", scale).value == expected


@pytest.mark.parametrize("amount, code", [("0", "USD"), ("-1", "USD"), ("abc", "USD"), ("1", "DOLLAR")])
def test_invalid_amounts(amount, code):
    with pytest.raises(ValueError):
        Amount.from_decimal(amount, code)


def test_amount_as_decimal():
    amount = Amount.from_payload({"value": "1250", "assetCode": "USD", "assetScale": 2})
    assert amount.as_decimal() == Decimal("12.50")


def test_scope_key_ignores_action_order_and_interaction():
    first = ScopeDescriptor(
        AS_URL,
        GrantRequest.build(CLIENT_WALLET, AccessType.QUOTE, [AccessAction.READ, AccessAction.CREATE]),
    )
    second = ScopeDescriptor(
        AS_URL.rstrip("/"),
        GrantRequest.build(
            CLIENT_WALLET,
            "quote",
            ["create", "read", "read"],
            interact=InteractRequest(finish_uri="https://app.example/finish", nonce="n"),
        ),
    )
    assert first.key == second.key
    assert first.label == "https://auth.example/ [quote:create+read]"


def test_scope_key_distinguishes_access():
    read_only = ScopeDescriptor(AS_URL, GrantRequest.build(CLIENT_WALLET, "quote", ["read"]))
    create = ScopeDescriptor(AS_URL, GrantRequest.build(CLIENT_WALLET, "quote", ["create"]))
    assert read_only.key != create.key


def test_grant_request_needs_access():
    with pytest.raises(ValueError):
        GrantRequest(access=(), client=CLIENT_WALLET)
    with pytest.raises(ValueError):
        GrantRequest.build(CLIENT_WALLET, "quote", [])


def test_access_token_from_payload():
    token = AccessToken.from_payload(
        {
            "value": "tok-1",
            "manage": "https://auth.example/token",
            "expires_in": 30,
            "access": [{"type": "quote", "actions": ["read"]}],
        },
        now=100.0,
    )
    assert token.can_rotate
    assert token.rotation_token == "tok-1"
    assert token.expires_at == 130.0
    assert not token.is_expired(120.0, leeway=5)
    assert token.is_expired(125.0, leeway=5)
    assert token.access[0].type is AccessType.QUOTE
    assert "tok-1" not in repr(token)


def test_token_without_expiry_never_expires():
    token = AccessToken.from_payload({"value": "tok-1"}, now=0.0)
    assert not token.can_rotate
    assert not token.is_expired(1e12)


def test_wallet_address_document():
    wallet = WalletAddress.from_payload(
        {
            "id": "https://wallet.example/alice",
            "authServer": "https://auth.example",
            "resourceServer": "https://rs.example",
            "assetCode": "EUR",
            "assetScale": "2",
        }
    )
    assert wallet.asset_scale == 2
    assert wallet.public_name is None
    with pytest.raises(ValueError, match="authServer"):
        WalletAddress.from_payload({"id": "https://wallet.example/alice"})


def test_quote_payload_takes_one_amount():
    amount = Amount("100", "USD", 2)
    with pytest.raises(ValueError):
        build_quote_payload(CLIENT_WALLET, "https://rs.example/ip/1", debit_amount=amount, receive_amount=amount)


def test_encode_body_is_compact_utf8():
    assert encode_body({"a": "é", "b": [1, 2]}) == '{"a":"é","b":[1,2]}'.encode("utf-8")
    assert encode_body(None) is None
