from __future__ import annotations

import pytest

from open_payments.core.grants import GrantNegotiator
from open_payments.core.keys import KeyStore
from open_payments.core.models import AccessAction, AccessType, GrantRequest, ScopeDescriptor
from open_payments.core.signatures import SignatureEngine
from open_payments.core.tokens import TokenManager

from support import (
    AS_URL,
    CLIENT_WALLET,
    TEST_KEY_ID,
    TEST_PRIVATE_KEY_PEM,
    FakeTransport,
    ManualClock,
    RecordingSleep,
)


@pytest.fixture
def key_store() -> KeyStore:
    return KeyStore.from_pem(TEST_PRIVATE_KEY_PEM, TEST_KEY_ID)


@pytest.fixture
def signer(key_store) -> SignatureEngine:
    return SignatureEngine(key_store)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def negotiator(signer, transport, clock, fake_sleep) -> GrantNegotiator:
    return GrantNegotiator(signer, transport, poll_wait_floor=1.0, clock=clock, sleep=fake_sleep)


@pytest.fixture
def token_manager(negotiator, clock):
    manager = TokenManager(negotiator, refresh_leeway=5.0, clock=clock)
    yield manager
    manager.close()


@pytest.fixture
def incoming_scope() -> ScopeDescriptor:
    grant = GrantRequest.build(
        CLIENT_WALLET,
        AccessType.INCOMING_PAYMENT,
        [AccessAction.CREATE, AccessAction.READ, AccessAction.COMPLETE],
    )
    return ScopeDescriptor(auth_server=AS_URL, grant=grant)


@pytest.fixture
def quote_scope() -> ScopeDescriptor:
    grant = GrantRequest.build(
        CLIENT_WALLET, AccessType.QUOTE, [AccessAction.CREATE, AccessAction.READ]
    )
    return ScopeDescriptor(auth_server=AS_URL, grant=grant)
