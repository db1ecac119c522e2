"""
Configuration objects and helpers for the Open Payments client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from .environment import build_environment
from .keys import KeyStore

__all__ = [
    "ClientConfig",
    "ClientParameters",
    "ConfigError",
    "load_client_config",
]

_PARAMETER_TO_ENV_KEY = {
    "wallet_address": "OPEN_PAYMENTS_WALLET_ADDRESS",
    "key_id": "OPEN_PAYMENTS_KEY_ID",
    "private_key": "OPEN_PAYMENTS_PRIVATE_KEY",
    "private_key_path": "OPEN_PAYMENTS_PRIVATE_KEY_PATH",
    "request_timeout_seconds": "OPEN_PAYMENTS_REQUEST_TIMEOUT_SECONDS",
    "connect_timeout_seconds": "OPEN_PAYMENTS_CONNECT_TIMEOUT_SECONDS",
    "max_retries": "OPEN_PAYMENTS_MAX_RETRIES",
    "backoff_base_seconds": "OPEN_PAYMENTS_BACKOFF_BASE_SECONDS",
    "backoff_max_seconds": "OPEN_PAYMENTS_BACKOFF_MAX_SECONDS",
    "poll_wait_floor_seconds": "OPEN_PAYMENTS_POLL_WAIT_FLOOR_SECONDS",
    "token_refresh_leeway_seconds": "OPEN_PAYMENTS_TOKEN_REFRESH_LEEWAY_SECONDS",
    "transaction_expiration_seconds": "OPEN_PAYMENTS_TRANSACTION_EXPIRATION_SECONDS",
    "max_concurrent_grants": "OPEN_PAYMENTS_MAX_CONCURRENT_GRANTS",
}


class ConfigError(Exception):
    """Raised when the supplied configuration is invalid."""


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class ClientParameters:
    """
    Explicit parameter bundle for constructing :class:`ClientConfig`.

    Callers can either instantiate this helper or pass the individual keyword
    arguments directly to :func:`load_client_config`.
    """

    wallet_address: Optional[str] = None
    key_id: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None
    request_timeout_seconds: Optional[float | str] = None
    connect_timeout_seconds: Optional[float | str] = None
    max_retries: Optional[int | str] = None
    backoff_base_seconds: Optional[float | str] = None
    backoff_max_seconds: Optional[float | str] = None
    poll_wait_floor_seconds: Optional[float | str] = None
    token_refresh_leeway_seconds: Optional[float | str] = None
    transaction_expiration_seconds: Optional[int | str] = None
    max_concurrent_grants: Optional[int | str] = None

    def as_overrides(self) -> Dict[str, str]:
        overrides: Dict[str, str] = {}
        for field_name, env_key in _PARAMETER_TO_ENV_KEY.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            overrides[env_key] = _stringify(value)
        return overrides


def _normalize_url(raw: Optional[str], name: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise ConfigError(f"{name} must be provided")
    if value.startswith("$"):
        value = "https://" + value[1:]
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{name} must be an absolute http(s) URL, got '{raw}'")
    return value.rstrip("/")


def _number(
    values: Mapping[str, str],
    key: str,
    default: str,
    convert: Callable[[str], Any],
    *,
    minimum: float = 0,
) -> Any:
    raw = values.get(key, default)
    try:
        number = convert(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got '{raw}'") from exc
    if number < minimum:
        raise ConfigError(f"{key} must be at least {minimum}, got {number}")
    return number


@dataclass(frozen=True)
class ClientConfig:
    wallet_address: str
    key_id: str
    private_key: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None
    request_timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    poll_wait_floor_seconds: float = 1.0
    token_refresh_leeway_seconds: float = 5.0
    transaction_expiration_seconds: int = 600
    max_concurrent_grants: int = 8

    def load_key_store(self) -> KeyStore:
        """Load the signing key named by this configuration."""
        if self.private_key:
            return KeyStore.from_pem(self.private_key, self.key_id)
        if self.private_key_path:
            return KeyStore.from_file(self.private_key_path, self.key_id)
        raise ConfigError(
            "OPEN_PAYMENTS_PRIVATE_KEY or OPEN_PAYMENTS_PRIVATE_KEY_PATH must be provided"
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "ClientConfig":
        wallet_address = _normalize_url(
            values.get("OPEN_PAYMENTS_WALLET_ADDRESS"), "OPEN_PAYMENTS_WALLET_ADDRESS"
        )

        key_id = (values.get("OPEN_PAYMENTS_KEY_ID") or "").strip()
        if not key_id:
            raise ConfigError("OPEN_PAYMENTS_KEY_ID must be provided")

        private_key = values.get("OPEN_PAYMENTS_PRIVATE_KEY") or None
        private_key_path = values.get("OPEN_PAYMENTS_PRIVATE_KEY_PATH") or None
        if private_key is None and private_key_path is None:
            raise ConfigError(
                "OPEN_PAYMENTS_PRIVATE_KEY or OPEN_PAYMENTS_PRIVATE_KEY_PATH must be provided"
            )

        backoff_base = _number(values, "OPEN_PAYMENTS_BACKOFF_BASE_SECONDS", "0.5", float)
        backoff_max = _number(values, "OPEN_PAYMENTS_BACKOFF_MAX_SECONDS", "8", float)
        if backoff_max < backoff_base:
            raise ConfigError(
                "OPEN_PAYMENTS_BACKOFF_MAX_SECONDS must not be lower than "
                "OPEN_PAYMENTS_BACKOFF_BASE_SECONDS"
            )

        return cls(
            wallet_address=wallet_address,
            key_id=key_id,
            private_key=private_key,
            private_key_path=private_key_path,
            request_timeout_seconds=_number(
                values, "OPEN_PAYMENTS_REQUEST_TIMEOUT_SECONDS", "10", float, minimum=0.001
            ),
            connect_timeout_seconds=_number(
                values, "OPEN_PAYMENTS_CONNECT_TIMEOUT_SECONDS", "10", float, minimum=0.001
            ),
            max_retries=_number(values, "OPEN_PAYMENTS_MAX_RETRIES", "3", int),
            backoff_base_seconds=backoff_base,
            backoff_max_seconds=backoff_max,
            poll_wait_floor_seconds=_number(
                values, "OPEN_PAYMENTS_POLL_WAIT_FLOOR_SECONDS", "1", float
            ),
            token_refresh_leeway_seconds=_number(
                values, "OPEN_PAYMENTS_TOKEN_REFRESH_LEEWAY_SECONDS", "5", float
            ),
            transaction_expiration_seconds=_number(
                values, "OPEN_PAYMENTS_TRANSACTION_EXPIRATION_SECONDS", "600", int, minimum=1
            ),
            max_concurrent_grants=_number(
                values, "OPEN_PAYMENTS_MAX_CONCURRENT_GRANTS", "8", int, minimum=1
            ),
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        parameters: Optional[ClientParameters] = None,
        **explicit: Any,
    ) -> "ClientConfig":
        merged_overrides = dict(overrides or {})
        if parameters is not None:
            merged_overrides.update(parameters.as_overrides())
        for key, value in explicit.items():
            if value is None:
                continue
            try:
                env_key = _PARAMETER_TO_ENV_KEY[key]
            except KeyError as exc:
                raise TypeError(f"Unknown client parameter '{key}'") from exc
            merged_overrides[env_key] = _stringify(value)

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment.variables)


def load_client_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[ClientParameters] = None,
    **explicit: Any,
) -> ClientConfig:
    """
    Convenience wrapper that mirrors :meth:`ClientConfig.from_env`.

    The configuration can be provided entirely through environment variables,
    a ``.env`` file, keyword arguments named like :class:`ClientParameters`
    fields, or any combination of them.
    """
    return ClientConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **explicit,
    )
