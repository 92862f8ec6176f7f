"""Shared constants for the jokepay x402 paywall."""

from __future__ import annotations

from typing import Dict, Tuple, TypedDict


PAYMENT_HEADER = "X-PAYMENT"
REQUEST_ID_HEADER = "X-Request-Id"

DEMO_SCHEME = "demo"
X402_SCHEME = "x402"
KNOWN_SCHEMES: Tuple[str, ...] = (X402_SCHEME, DEMO_SCHEME)

DEFAULT_PAYMENT_SCHEME = "exact"
DEFAULT_NETWORK = "base-sepolia"
DEFAULT_FACILITATOR_URL = "https://api.demo-facilitator.invalid/x402/facilitator"
DEFAULT_INVOICE_TTL_MS = 120_000
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 15.0
TOKEN_EXPIRY_MARGIN_SECONDS = 5.0
X402_VERSION = 1

# Rejection reasons surfaced in 402 bodies.
REASON_MISSING_HEADER = "missing_header"
REASON_INVALID_HEADER = "invalid_header"
REASON_UNSUPPORTED_SCHEME = "unsupported_scheme"
REASON_MISSING_NONCE = "missing_invoice_nonce"
REASON_UNKNOWN_INVOICE = "unknown_invoice"
REASON_FACILITATOR_REJECTED = "facilitator_rejected"
REASON_FACILITATOR_ERROR = "facilitator_error"
REASON_SETTLEMENT_FAILED = "settlement_failed"


class DefaultAsset(TypedDict):
    address: str
    name: str
    version: str
    decimals: int


DEFAULT_ASSETS: Dict[str, DefaultAsset] = {
    "base-sepolia": {
        "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "name": "USDC",
        "version": "2",
        "decimals": 6,
    },
    "base": {
        "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "name": "USD Coin",
        "version": "2",
        "decimals": 6,
    },
}


class UnsupportedNetworkError(ValueError):
    """Raised when a network has no default settlement asset."""


def get_default_asset(network: str) -> DefaultAsset:
    try:
        return DEFAULT_ASSETS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No default asset configured for network {network}") from exc
