"""
Ed25519 key material used to sign every outbound request.

A :class:`KeyStore` is constructed explicitly and passed to the components
that need it, so several clients with different keys can share a process.
"""

from __future__ import annotations

import base64
import binascii
import functools
import logging
from pathlib import Path
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import KeyUnavailable

__all__ = ["ALGORITHM", "KeyStore"]

ALGORITHM = "ed25519"

_PEM_MARKER = b"-----BEGIN"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _pem_bytes(material: Union[str, bytes]) -> bytes:
    data = material.encode("utf-8") if isinstance(material, str) else bytes(material)
    data = data.strip()
    if not data:
        raise KeyUnavailable("Private key material is empty")
    if data.startswith(_PEM_MARKER):
        return data
    # Wallet dashboards hand out the PEM document itself base64 encoded.
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyUnavailable("Private key is neither PEM nor base64 encoded PEM") from exc
    if not decoded.strip().startswith(_PEM_MARKER):
        raise KeyUnavailable("Decoded private key is not a PEM document")
    return decoded.strip()


def _parse_private_key(pem: bytes) -> Ed25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyUnavailable(f"Failed to load private key: {exc}") from exc
    if not isinstance(key, Ed25519PrivateKey):
        raise KeyUnavailable(
            f"Expected an Ed25519 private key, got {type(key).__name__}"
        )
    return key


@functools.lru_cache(maxsize=None)
def _load_key_file(path: str) -> Ed25519PrivateKey:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise KeyUnavailable(f"Private key file {path} cannot be read: {exc}") from exc
    logging.debug("Loaded private key from %s", path)
    return _parse_private_key(_pem_bytes(data))


class KeyStore:
    """
    Holds the client's Ed25519 signing key and its key identifier.

    The private key never leaves the instance: callers get signatures, the
    public key, or the public JWK, never the secret bytes.
    """

    def __init__(self, private_key: Ed25519PrivateKey, key_id: str) -> None:
        if not isinstance(private_key, Ed25519PrivateKey):
            raise KeyUnavailable("KeyStore requires an Ed25519 private key")
        if not key_id or not key_id.strip():
            raise KeyUnavailable("Key id must not be empty")
        self._private_key = private_key
        self._key_id = key_id.strip()

    def __repr__(self) -> str:
        return f"KeyStore(key_id={self._key_id!r}, algorithm={ALGORITHM!r})"

    @classmethod
    def from_pem(cls, material: Union[str, bytes], key_id: str) -> "KeyStore":
        return cls(_parse_private_key(_pem_bytes(material)), key_id)

    @classmethod
    def from_file(cls, path: Union[str, Path], key_id: str) -> "KeyStore":
        """
        Load the key from a PEM file.

        Parsed keys are cached per path for the lifetime of the process, so
        repeated loads are cheap and idempotent.
        """
        return cls(_load_key_file(str(Path(path).expanduser().resolve())), key_id)

    @classmethod
    def generate(cls, key_id: str) -> "KeyStore":
        return cls(Ed25519PrivateKey.generate(), key_id)

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def algorithm(self) -> str:
        return ALGORITHM

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    def verify(self, signature: bytes, data: bytes) -> bool:
        try:
            self.public_key().verify(signature, data)
        except InvalidSignature:
            return False
        return True

    def public_jwk(self) -> Dict[str, Any]:
        """Public key in the JWK form wallet address servers publish."""
        raw = self.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return {
            "kid": self._key_id,
            "kty": "OKP",
            "crv": "Ed25519",
            "x": _b64url(raw),
            "alg": "EdDSA",
            "use": "sig",
        }
