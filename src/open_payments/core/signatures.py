"""
HTTP message signatures for Open Payments requests.

The signature base is a newline-joined list of ``"component": value`` lines
followed by the ``@signature-params`` line. Components are chosen from a fixed,
ordered set; nothing about them is negotiated at runtime.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import SplitResult, urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .errors import SignatureFailure
from .keys import KeyStore

__all__ = [
    "SIGNATURE_LABEL",
    "SignableRequest",
    "SignatureEngine",
    "SignedHeaders",
    "content_digest",
    "verify_request",
]

SIGNATURE_LABEL = "sig1"
DIGEST_ALGORITHM = "sha-512"

AUTHORIZATION_HEADER = "Authorization"
CONTENT_DIGEST_HEADER = "Content-Digest"
CONTENT_LENGTH_HEADER = "Content-Length"
CONTENT_TYPE_HEADER = "Content-Type"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
SIGNATURE_HEADER = "Signature"
SIGNATURE_INPUT_HEADER = "Signature-Input"

_DEFAULT_PORTS = {"http": 80, "https": 443}
_SIGNATURE_INPUT_RE = re.compile(r"^(?P<label>[^=\s]+)=(?P<params>\((?P<components>[^)]*)\).*)$")
_SIGNATURE_RE = re.compile(r"^(?P<label>[^=\s]+)=:(?P<value>[A-Za-z0-9+/=]*):$")


def content_digest(body: bytes) -> str:
    """``Content-Digest`` value for ``body``: ``sha-512=:<base64>:``."""
    digest = hashlib.sha512(body).digest()
    return "%s=:%s:" % (DIGEST_ALGORITHM, base64.b64encode(digest).decode("ascii"))


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {name.lower(): str(value).strip() for name, value in headers.items()}


def _authority(parts: SplitResult) -> str:
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
        return f"{host}:{port}"
    return host


@dataclass(frozen=True)
class SignableRequest:
    """Everything that goes on the wire for one request, before signing."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass(frozen=True)
class SignedHeaders:
    signature_input: str
    signature: str
    content_digest: Optional[str] = None
    content_length: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.content_digest is not None:
            headers[CONTENT_DIGEST_HEADER] = self.content_digest
        if self.content_length is not None:
            headers[CONTENT_LENGTH_HEADER] = self.content_length
        headers[SIGNATURE_INPUT_HEADER] = self.signature_input
        headers[SIGNATURE_HEADER] = self.signature
        return headers


def _components(
    request: SignableRequest,
    parts: SplitResult,
    headers: Mapping[str, str],
) -> List[Tuple[str, Optional[str]]]:
    components: List[Tuple[str, Optional[str]]] = [
        ("@method", request.method.upper()),
        ("@authority", _authority(parts)),
        ("@path", parts.path or "/"),
    ]
    if parts.query:
        components.append(("@query", "?" + parts.query))
    if request.body:
        components.append(("content-digest", headers.get("content-digest")))
        components.append(("content-length", headers.get("content-length")))
        components.append(("content-type", headers.get("content-type")))
    if "authorization" in headers:
        components.append(("authorization", headers["authorization"]))
    if "idempotency-key" in headers:
        components.append(("idempotency-key", headers["idempotency-key"]))
    return components


def _signature_params(
    names: List[str],
    *,
    created: int,
    key_id: str,
    algorithm: str,
    nonce: Optional[str],
) -> str:
    params = '(%s);created=%d;keyid="%s";alg="%s"' % (
        " ".join(f'"{name}"' for name in names),
        created,
        key_id,
        algorithm,
    )
    if nonce is not None:
        params += ';nonce="%s"' % nonce
    return params


def _signature_base(components: List[Tuple[str, Optional[str]]], params: str) -> str:
    lines = [f'"{name}": {value}' for name, value in components]
    lines.append(f'"@signature-params": {params}')
    return "\n".join(lines)


class SignatureEngine:
    """
    Produces ``Signature-Input``/``Signature`` (and ``Content-Digest``) headers.

    The returned values must be attached verbatim. Changing any covered
    header, the URL or the body afterwards invalidates the signature; the
    request has to be signed again.
    """

    def __init__(
        self,
        key_store: KeyStore,
        *,
        label: str = SIGNATURE_LABEL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_store = key_store
        self.label = label
        self._clock = clock

    def _prepare(
        self,
        request: SignableRequest,
        created: Optional[int],
        nonce: Optional[str],
    ) -> Tuple[str, str, Optional[str], Optional[str]]:
        headers = _lower_headers(request.headers)
        digest = length = None
        if request.body:
            digest = content_digest(request.body)
            length = str(len(request.body))
            headers["content-digest"] = digest
            headers["content-length"] = length

        components = _components(request, urlsplit(request.url), headers)
        missing = [name for name, value in components if not value]
        if missing:
            raise SignatureFailure(
                "Covered components missing from %s %s: %s"
                % (request.method.upper(), request.url, ", ".join(missing))
            )

        created = int(self._clock()) if created is None else int(created)
        params = _signature_params(
            [name for name, _ in components],
            created=created,
            key_id=self.key_store.key_id,
            algorithm=self.key_store.algorithm,
            nonce=nonce,
        )
        return _signature_base(components, params), params, digest, length

    def signature_base(
        self,
        request: SignableRequest,
        *,
        created: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> str:
        return self._prepare(request, created, nonce)[0]

    def sign(
        self,
        request: SignableRequest,
        *,
        created: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> SignedHeaders:
        base, params, digest, length = self._prepare(request, created, nonce)
        try:
            raw = self.key_store.sign(base.encode("utf-8"))
        except Exception as exc:  # noqa: BLE001
            raise SignatureFailure(f"Failed to sign request: {exc}") from exc

        logging.debug(
            "Signed %s %s with key %s", request.method.upper(), request.url, self.key_store.key_id
        )
        return SignedHeaders(
            signature_input=f"{self.label}={params}",
            signature="%s=:%s:" % (self.label, base64.b64encode(raw).decode("ascii")),
            content_digest=digest,
            content_length=length,
        )


def verify_request(
    public_key: Ed25519PublicKey,
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Optional[bytes] = None,
) -> bool:
    """
    Verify a signed request the way a receiving server would.

    The digest is recomputed from ``body`` and the signature base is rebuilt
    from the components listed in ``Signature-Input``.
    """
    lowered = _lower_headers(headers)
    input_match = _SIGNATURE_INPUT_RE.match(lowered.get("signature-input", ""))
    signature_match = _SIGNATURE_RE.match(lowered.get("signature", ""))
    if input_match is None or signature_match is None:
        return False
    if input_match.group("label") != signature_match.group("label"):
        return False

    if body:
        if lowered.get("content-digest") != content_digest(body):
            return False
        if lowered.get("content-length") != str(len(body)):
            return False

    parts = urlsplit(url)
    derived = {
        "@method": method.upper(),
        "@authority": _authority(parts),
        "@path": parts.path or "/",
        "@query": "?" + parts.query,
    }
    components: List[Tuple[str, Optional[str]]] = []
    for name in re.findall(r'"([^"]+)"', input_match.group("components")):
        value = derived.get(name) if name.startswith("@") else lowered.get(name)
        if value is None:
            return False
        components.append((name, value))

    base = _signature_base(components, input_match.group("params"))
    try:
        signature = base64.b64decode(signature_match.group("value"), validate=True)
        public_key.verify(signature, base.encode("utf-8"))
    except (binascii.Error, InvalidSignature):
        return False
    return True
