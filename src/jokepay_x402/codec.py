"""X-PAYMENT header codec.

Headers look like ``"<scheme> <payload>"``. The ``demo`` scheme carries the
bare invoice nonce; the ``x402`` scheme carries a base64url-encoded JSON
payment payload whose invoice nonce may sit under several keys.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from .constants import (
    DEMO_SCHEME,
    KNOWN_SCHEMES,
    REASON_INVALID_HEADER,
    REASON_MISSING_HEADER,
    REASON_MISSING_NONCE,
    REASON_UNSUPPORTED_SCHEME,
    X402_SCHEME,
)

JsonDict = Dict[str, Any]

# Checked in order; the first non-empty value wins.
NONCE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("payload", "authorization", "nonce"),
    ("payload", "nonce"),
    ("invoice_nonce",),
    ("nonce",),
    ("extra", "invoice_nonce"),
)


@dataclass(frozen=True)
class PaymentCredential:
    scheme: str
    nonce: str
    proof: Optional[JsonDict] = None

    @classmethod
    def demo(cls, nonce: str) -> "PaymentCredential":
        return cls(scheme=DEMO_SCHEME, nonce=nonce)

    @classmethod
    def x402(cls, proof: JsonDict) -> "PaymentCredential":
        nonce = extract_nonce(proof)
        if nonce is None:
            raise ValueError("x402 payment payload does not carry an invoice nonce")
        return cls(scheme=X402_SCHEME, nonce=nonce, proof=proof)

    @property
    def payer(self) -> Optional[str]:
        if not self.proof:
            return None
        value = _lookup(self.proof, ("payload", "authorization", "from"))
        return str(value) if value else None


@dataclass(frozen=True)
class DecodeFailure:
    reason: str
    message: str

    def to_detail(self) -> JsonDict:
        return {"reason": self.reason, "message": self.message}


DecodeResult = Union[PaymentCredential, DecodeFailure]


def _lookup(data: Any, path: Sequence[str]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_nonce(payload: JsonDict) -> Optional[str]:
    for path in NONCE_PATHS:
        value = _lookup(payload, path)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _b64url_decode(value: str) -> bytes:
    normalized = value.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def encode_header(credential: PaymentCredential) -> str:
    scheme = credential.scheme.lower()
    if scheme == DEMO_SCHEME:
        return f"{DEMO_SCHEME} {credential.nonce}"
    if scheme == X402_SCHEME:
        if not isinstance(credential.proof, dict):
            raise ValueError("x402 credentials need a JSON object proof")
        if extract_nonce(credential.proof) != credential.nonce:
            raise ValueError("x402 proof does not carry the credential nonce")
        raw = json.dumps(credential.proof, separators=(",", ":"), sort_keys=True)
        return f"{X402_SCHEME} {_b64url_encode(raw.encode('utf-8'))}"
    raise ValueError(f"Unsupported payment scheme: {credential.scheme}")


def decode_header(value: Optional[str]) -> DecodeResult:
    if value is None or not value.strip():
        return DecodeFailure(REASON_MISSING_HEADER, "X-PAYMENT header is empty")

    parts = value.strip().split(None, 1)
    if len(parts) != 2:
        if parts[0].lower() in KNOWN_SCHEMES:
            return DecodeFailure(REASON_MISSING_NONCE, "header carries a scheme but no payload")
        return DecodeFailure(REASON_INVALID_HEADER, "expected '<scheme> <payload>'")
    scheme, payload = parts[0].lower(), parts[1].strip()

    if scheme not in KNOWN_SCHEMES:
        return DecodeFailure(REASON_UNSUPPORTED_SCHEME, f"scheme '{parts[0]}' is not supported")

    if scheme == DEMO_SCHEME:
        if len(payload.split()) != 1:
            return DecodeFailure(REASON_INVALID_HEADER, "demo payload must be a single nonce")
        return PaymentCredential.demo(payload)

    try:
        decoded = json.loads(_b64url_decode(payload).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        return DecodeFailure(REASON_INVALID_HEADER, f"payload is not base64 JSON: {exc}")
    if not isinstance(decoded, dict):
        return DecodeFailure(REASON_INVALID_HEADER, "payload must be a JSON object")

    nonce = extract_nonce(decoded)
    if nonce is None:
        return DecodeFailure(REASON_MISSING_NONCE, "payload does not carry an invoice nonce")
    return PaymentCredential(scheme=X402_SCHEME, nonce=nonce, proof=decoded)


def normalize_header(raw: str) -> str:
    """Ensure a pre-built header token carries an explicit scheme prefix."""
    value = raw.strip()
    lowered = value.lower()
    for scheme in KNOWN_SCHEMES:
        if lowered.startswith(f"{scheme} "):
            return value
    return f"{X402_SCHEME} {value}"
