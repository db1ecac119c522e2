"""
Public facade for the Open Payments client package.

The most useful pieces are re-exported here so integrators can
``from open_payments import ...`` without navigating the package.
"""

from .api import create_client
from .core import (
    AccessAction,
    AccessToken,
    AccessType,
    Amount,
    AuthorizationRejected,
    CancellationToken,
    ClientConfig,
    ClientParameters,
    ConfigError,
    FlightConflict,
    GrantDenied,
    GrantState,
    GrantStateError,
    GrantStatus,
    InteractionRequired,
    KeyStore,
    KeyUnavailable,
    OpenPaymentsClient,
    OpenPaymentsError,
    OperationCancelled,
    OperationFailed,
    PollTooEarly,
    RequestRejected,
    RequestsTransport,
    ScopeDescriptor,
    ServerUnavailable,
    SignatureEngine,
    SignatureFailure,
    TokenExpired,
    Transport,
    TransportFailure,
    WalletAddress,
    build_environment,
    load_client_config,
    load_env_file,
    verify_request,
)

__all__ = (
    "AccessAction",
    "AccessToken",
    "AccessType",
    "Amount",
    "AuthorizationRejected",
    "CancellationToken",
    "ClientConfig",
    "ClientParameters",
    "ConfigError",
    "FlightConflict",
    "GrantDenied",
    "GrantState",
    "GrantStateError",
    "GrantStatus",
    "InteractionRequired",
    "KeyStore",
    "KeyUnavailable",
    "OpenPaymentsClient",
    "OpenPaymentsError",
    "OperationCancelled",
    "OperationFailed",
    "PollTooEarly",
    "RequestRejected",
    "RequestsTransport",
    "ScopeDescriptor",
    "ServerUnavailable",
    "SignatureEngine",
    "SignatureFailure",
    "TokenExpired",
    "Transport",
    "TransportFailure",
    "WalletAddress",
    "build_environment",
    "create_client",
    "load_client_config",
    "load_env_file",
    "verify_request",
)
