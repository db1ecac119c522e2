"""
Core primitives that implement HTTP message signing, grant negotiation and
token caching for Open Payments.
"""

from .client import OpenPaymentsClient, join_url
from .concurrency import CancellationToken, SingleFlight
from .config import (
    ClientConfig,
    ClientParameters,
    ConfigError,
    load_client_config,
)
from .dispatcher import Operation, RequestDispatcher
from .environment import ClientEnvironment, build_environment, load_env_file
from .errors import (
    AuthorizationRejected,
    FlightConflict,
    GrantDenied,
    GrantStateError,
    InteractionRequired,
    KeyUnavailable,
    OpenPaymentsError,
    OperationCancelled,
    OperationFailed,
    PollTooEarly,
    RequestRejected,
    ServerUnavailable,
    SignatureFailure,
    TokenExpired,
    TransportFailure,
)
from .grants import GrantNegotiator
from .keys import KeyStore
from .models import (
    AccessAction,
    AccessItem,
    AccessToken,
    AccessType,
    Amount,
    GrantRequest,
    GrantState,
    GrantStatus,
    InteractRequest,
    Limits,
    ScopeDescriptor,
    WalletAddress,
)
from .payloads import (
    build_continue_payload,
    build_grant_payload,
    build_incoming_payment_payload,
    build_outgoing_payment_payload,
    build_quote_payload,
    encode_body,
)
from .signatures import SignableRequest, SignatureEngine, SignedHeaders, verify_request
from .tokens import InteractionHandler, TokenManager
from .transport import HttpRequest, HttpResponse, RequestsTransport, Transport

__all__ = [
    "AccessAction",
    "AccessItem",
    "AccessToken",
    "AccessType",
    "Amount",
    "AuthorizationRejected",
    "CancellationToken",
    "ClientConfig",
    "ClientEnvironment",
    "ClientParameters",
    "ConfigError",
    "FlightConflict",
    "GrantDenied",
    "GrantNegotiator",
    "GrantRequest",
    "GrantState",
    "GrantStateError",
    "GrantStatus",
    "HttpRequest",
    "HttpResponse",
    "InteractRequest",
    "InteractionHandler",
    "InteractionRequired",
    "KeyStore",
    "KeyUnavailable",
    "Limits",
    "OpenPaymentsClient",
    "OpenPaymentsError",
    "Operation",
    "OperationCancelled",
    "OperationFailed",
    "PollTooEarly",
    "RequestDispatcher",
    "RequestRejected",
    "RequestsTransport",
    "ScopeDescriptor",
    "ServerUnavailable",
    "SignableRequest",
    "SignatureEngine",
    "SignatureFailure",
    "SignedHeaders",
    "SingleFlight",
    "TokenExpired",
    "TokenManager",
    "Transport",
    "TransportFailure",
    "WalletAddress",
    "build_continue_payload",
    "build_environment",
    "build_grant_payload",
    "build_incoming_payment_payload",
    "build_outgoing_payment_payload",
    "build_quote_payload",
    "encode_body",
    "join_url",
    "load_client_config",
    "load_env_file",
    "verify_request",
]
