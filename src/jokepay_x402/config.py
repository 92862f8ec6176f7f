"""Environment-driven configuration for the paywall server and the client agent."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .constants import (
    DEFAULT_FACILITATOR_URL,
    DEFAULT_INVOICE_TTL_MS,
    DEFAULT_NETWORK,
    DEFAULT_PAYMENT_SCHEME,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    X402_VERSION,
    UnsupportedNetworkError,
    get_default_asset,
)


class ConfigError(ValueError):
    """Raised when a configuration value is missing or malformed."""


def load_env_file(path: Optional[Path] = None) -> None:
    """Load a ``.env`` file without overriding variables already set."""
    if path is not None:
        load_dotenv(path, override=False)
    else:
        load_dotenv(override=False)


def _value(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _value(env, key)
    if raw is None:
        return default
    try:
        return int(raw, 10)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer value.") from exc


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _value(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number.") from exc


def _flag(env: Mapping[str, str], key: str, default: bool = True) -> bool:
    raw = _value(env, key)
    if raw is None:
        return default
    return raw.lower() not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class ServerConfig:
    port: int = 3000
    path: str = "/joke"
    price_cents: int = 1
    currency: str = "USDC"
    network: str = DEFAULT_NETWORK
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    pay_to: str = "demo.seller"
    seller_name: str = "1¢ Joke Agent"
    policy_label: str = "daily-$1"
    mock_facilitator: bool = True
    invoice_ttl_ms: int = DEFAULT_INVOICE_TTL_MS
    asset_address: str = get_default_asset(DEFAULT_NETWORK)["address"]
    asset_decimals: int = get_default_asset(DEFAULT_NETWORK)["decimals"]
    payment_scheme: str = DEFAULT_PAYMENT_SCHEME
    resource_url: Optional[str] = None
    mime_type: str = "application/json"
    allowed_origin: str = "*"
    facilitator_api_key: Optional[str] = None
    facilitator_token_url: Optional[str] = None
    facilitator_client_id: Optional[str] = None
    facilitator_client_secret: Optional[str] = None
    facilitator_scope: Optional[str] = None
    facilitator_timeout: float = DEFAULT_TIMEOUT_SECONDS
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    protocol_version: int = X402_VERSION

    @property
    def resource(self) -> str:
        return self.resource_url or f"http://localhost:{self.port}{self.path}"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        if env is None:
            load_env_file()
            env = os.environ

        network = _value(env, "JOKE_NETWORK", DEFAULT_NETWORK)
        asset_address = _value(env, "ASSET_ADDRESS")
        asset_decimals_raw = _value(env, "ASSET_DECIMALS")
        if asset_address is None or asset_decimals_raw is None:
            try:
                default_asset = get_default_asset(network)
            except UnsupportedNetworkError as exc:
                raise ConfigError(
                    f"ASSET_ADDRESS and ASSET_DECIMALS are required for network {network}"
                ) from exc
            asset_address = asset_address or default_asset["address"]
            asset_decimals = _int(env, "ASSET_DECIMALS", default_asset["decimals"])
        else:
            asset_decimals = _int(env, "ASSET_DECIMALS", 6)

        price_cents = _int(env, "JOKE_PRICE_CENTS", 1)
        if price_cents < 0:
            raise ConfigError("JOKE_PRICE_CENTS must be non-negative.")
        ttl_ms = _int(env, "INVOICE_TTL_MS", DEFAULT_INVOICE_TTL_MS)
        if ttl_ms <= 0:
            raise ConfigError("INVOICE_TTL_MS must be positive.")

        path = _value(env, "JOKE_PATH", "/joke")
        if not path.startswith("/"):
            path = f"/{path}"

        return cls(
            port=_int(env, "PORT", 3000),
            path=path,
            price_cents=price_cents,
            currency=_value(env, "JOKE_CURRENCY", "USDC"),
            network=network,
            facilitator_url=_value(env, "FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
            pay_to=_value(env, "SELLER_ID", "demo.seller"),
            seller_name=_value(env, "SELLER_NAME", "1¢ Joke Agent"),
            policy_label=_value(env, "POLICY_LABEL", "daily-$1"),
            mock_facilitator=_flag(env, "MOCK_FACILITATOR"),
            invoice_ttl_ms=ttl_ms,
            asset_address=asset_address,
            asset_decimals=asset_decimals,
            payment_scheme=_value(env, "PAYMENT_SCHEME", DEFAULT_PAYMENT_SCHEME),
            resource_url=_value(env, "RESOURCE_URL"),
            mime_type=_value(env, "MIME_TYPE", "application/json"),
            allowed_origin=_value(env, "ALLOWED_ORIGIN", "*"),
            facilitator_api_key=_value(env, "FACILITATOR_API_KEY"),
            facilitator_token_url=_value(env, "FACILITATOR_TOKEN_URL"),
            facilitator_client_id=_value(env, "FACILITATOR_CLIENT_ID"),
            facilitator_client_secret=_value(env, "FACILITATOR_CLIENT_SECRET"),
            facilitator_scope=_value(env, "FACILITATOR_SCOPE"),
            facilitator_timeout=_float(env, "FACILITATOR_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
            sweep_interval=_float(env, "SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS),
            protocol_version=_int(env, "X402_PROTOCOL_VERSION", X402_VERSION),
        )


AUTHORIZER_KINDS = ("mock", "signer", "policy")


@dataclass(frozen=True)
class AgentConfig:
    api_url: str = "http://localhost:3000/joke"
    authorizer: str = "mock"
    policy_api_url: Optional[str] = None
    policy_api_key: Optional[str] = None
    payer_private_key: Optional[str] = None
    max_spend_cents: Optional[int] = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    price_cents: int = 1
    currency: str = "USDC"
    policy_label: str = "daily-$1"
    seller_name: str = "1¢ Joke Agent"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        if env is None:
            load_env_file()
            env = os.environ

        default_kind = "mock" if _flag(env, "MOCK_AUTHORIZER") else "policy"
        kind = _value(env, "AUTHORIZER", default_kind).lower()
        if kind not in AUTHORIZER_KINDS:
            raise ConfigError(f"AUTHORIZER must be one of {', '.join(AUTHORIZER_KINDS)}")

        max_spend = _value(env, "MAX_SPEND_CENTS")
        return cls(
            api_url=_value(env, "JOKE_API_URL", "http://localhost:3000/joke"),
            authorizer=kind,
            policy_api_url=_value(env, "POLICY_API_URL"),
            policy_api_key=_value(env, "POLICY_API_KEY"),
            payer_private_key=_value(env, "PAYER_PRIVATE_KEY"),
            max_spend_cents=_int(env, "MAX_SPEND_CENTS", 0) if max_spend is not None else None,
            timeout=_float(env, "AGENT_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
            price_cents=_int(env, "JOKE_PRICE_CENTS", 1),
            currency=_value(env, "JOKE_CURRENCY", "USDC"),
            policy_label=_value(env, "POLICY_LABEL", "daily-$1"),
            seller_name=_value(env, "SELLER_NAME", "1¢ Joke Agent"),
        )
