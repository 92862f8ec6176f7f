"""Client-side authorizers that turn a payment challenge into a credential."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from .codec import PaymentCredential
from .constants import DEFAULT_TIMEOUT_SECONDS, X402_SCHEME, X402_VERSION
from .pricing import format_cents, parse_amount_to_cents, to_atomic_units

if TYPE_CHECKING:
    from .config import AgentConfig

JsonDict = Dict[str, Any]
logger = logging.getLogger(__name__)


class AuthorizerError(RuntimeError):
    """Raised when an authorizer cannot be reached or answers nonsense."""


class AuthorizerTimeoutError(AuthorizerError):
    """Raised when the policy engine does not answer within the timeout."""


@dataclass(frozen=True)
class Challenge:
    """The subset of a 402 body an authorizer needs."""

    invoice_nonce: str
    amount: str
    currency: str
    vendor: str
    price_cents: int
    network: Optional[str] = None
    scheme: Optional[str] = None
    asset_address: Optional[str] = None
    asset_decimals: Optional[int] = None
    expires_at: Optional[str] = None
    raw: JsonDict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_body(cls, body: Any) -> "Challenge":
        if not isinstance(body, dict):
            raise ValueError("challenge body must be a JSON object")

        def pick(*paths):
            for path in paths:
                current: Any = body
                for key in path.split("."):
                    current = current.get(key) if isinstance(current, dict) else None
                if current not in (None, ""):
                    return current
            return None

        nonce = pick("invoice_nonce")
        amount = pick("price.amount")
        currency = pick("price.currency")
        vendor = pick("seller.id", "facilitator.pay_to")
        missing = [
            name
            for name, value in (
                ("invoice_nonce", nonce),
                ("price.amount", amount),
                ("price.currency", currency),
                ("seller.id", vendor),
            )
            if value is None
        ]
        if missing:
            raise ValueError(f"challenge missing required fields: {', '.join(missing)}")

        try:
            price_cents = pick("price_cents")
            price_cents = int(price_cents) if price_cents is not None else parse_amount_to_cents(str(amount))
            decimals = pick("payment.asset.decimals")
            decimals = int(decimals) if decimals is not None else None
        except (TypeError, ValueError) as exc:
            raise ValueError(f"challenge has malformed numeric fields: {exc}") from exc
        return cls(
            invoice_nonce=str(nonce),
            amount=str(amount),
            currency=str(currency),
            vendor=str(vendor),
            price_cents=price_cents,
            network=pick("facilitator.network"),
            scheme=pick("payment.scheme"),
            asset_address=pick("payment.asset.address"),
            asset_decimals=decimals,
            expires_at=pick("expires_at"),
            raw=body,
        )


@dataclass(frozen=True)
class Approval:
    approved: bool
    credential: Optional[PaymentCredential] = None
    header: Optional[str] = None
    reason: Optional[str] = None
    audit_id: Optional[str] = None

    @classmethod
    def denied(cls, reason: str) -> "Approval":
        return cls(approved=False, reason=reason)


class Authorizer(Protocol):
    async def authorize(self, challenge: Challenge, memo: str) -> Approval:
        ...


class MockAuthorizer:
    """Approves every spend with a ``demo`` header."""

    def __init__(
        self,
        *,
        price_cents: int = 1,
        currency: str = "USDC",
        policy_label: str = "daily-$1",
        vendor_name: str = "1¢ Joke Agent",
    ) -> None:
        self._price_cents = price_cents
        self._currency = currency
        self._policy_label = policy_label
        self._vendor_name = vendor_name

    async def authorize(self, challenge: Challenge, memo: str) -> Approval:
        logger.info("mock authorizer approved %s %s for %r", challenge.amount, challenge.currency, memo)
        return Approval(
            approved=True,
            credential=PaymentCredential.demo(challenge.invoice_nonce),
            audit_id=f"mock-audit-{uuid.uuid4()}",
        )

    async def fetch_audit(self, audit_id: str) -> JsonDict:
        return {
            "auditId": audit_id,
            "spent": format_cents(self._price_cents),
            "currency": self._currency,
            "policy": self._policy_label,
            "tx": f"mock-tx-{audit_id.split('-')[-1]}",
            "vendor": self._vendor_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class LocalSignerAuthorizer:
    """Signs an x402 authorization with a local private key (EIP-191)."""

    def __init__(self, private_key: str, *, max_spend_cents: Optional[int] = None) -> None:
        self._account = Account.from_key(private_key)
        self._max_spend_cents = max_spend_cents

    @property
    def address(self) -> str:
        return self._account.address

    @staticmethod
    def signing_message(authorization: JsonDict) -> str:
        return json.dumps(authorization, separators=(",", ":"), sort_keys=True)

    async def authorize(self, challenge: Challenge, memo: str) -> Approval:
        if self._max_spend_cents is not None and challenge.price_cents > self._max_spend_cents:
            return Approval.denied(
                f"price {challenge.amount} {challenge.currency} exceeds spend cap "
                f"{format_cents(self._max_spend_cents)}"
            )

        decimals = challenge.asset_decimals if challenge.asset_decimals is not None else 2
        authorization = {
            "from": self._account.address,
            "to": challenge.vendor,
            "value": str(to_atomic_units(challenge.price_cents, decimals)),
            "validBefore": challenge.expires_at,
            "nonce": challenge.invoice_nonce,
        }
        signed = self._account.sign_message(encode_defunct(text=self.signing_message(authorization)))
        proof = {
            "x402Version": X402_VERSION,
            "scheme": challenge.scheme or X402_SCHEME,
            "network": challenge.network,
            "payload": {
                "signature": "0x" + bytes(signed.signature).hex(),
                "authorization": authorization,
            },
        }
        logger.info("signed authorization for nonce=%s memo=%r", challenge.invoice_nonce, memo)
        return Approval(approved=True, credential=PaymentCredential.x402(proof))


class PolicyDelegateAuthorizer:
    """Delegates the spend decision to a remote policy engine."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def authorize(self, challenge: Challenge, memo: str) -> Approval:
        body = {
            "vendor": challenge.vendor,
            "amount": challenge.amount,
            "currency": challenge.currency,
            "memo": memo,
            "invoice_nonce": challenge.invoice_nonce,
        }
        endpoint = f"{self._base_url}/authorize"
        try:
            response = await self._get_client().post(
                endpoint, json=body, headers=self._headers(), timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise AuthorizerTimeoutError(
                f"policy engine at {endpoint} timed out after {self._timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise AuthorizerError(f"failed to contact policy engine at {endpoint}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthorizerError(
                f"policy engine returned invalid JSON ({response.status_code})"
            ) from exc
        if not isinstance(payload, dict):
            raise AuthorizerError("policy engine response must be a JSON object")

        reason = payload.get("reason") or payload.get("error")
        if response.status_code >= 400 or not payload.get("approved"):
            return Approval.denied(str(reason) if reason else f"policy engine declined ({response.status_code})")

        header = payload.get("paymentHeader") or payload.get("payment_header")
        return Approval(
            approved=True,
            header=str(header) if header else None,
            reason=reason,
            audit_id=payload.get("auditId") or payload.get("audit_id"),
        )

    async def fetch_audit(self, audit_id: str) -> JsonDict:
        endpoint = f"{self._base_url}/audit/{audit_id}"
        try:
            response = await self._get_client().get(endpoint, headers=self._headers(), timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise AuthorizerTimeoutError(f"audit {audit_id} fetch timed out after {self._timeout}s") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthorizerError(f"failed to fetch audit {audit_id}: {exc}") from exc
        if not isinstance(payload, dict):
            raise AuthorizerError("audit response must be a JSON object")
        return payload


def build_authorizer(config: "AgentConfig") -> Authorizer:
    if config.authorizer == "signer":
        if not config.payer_private_key:
            raise AuthorizerError("PAYER_PRIVATE_KEY is required for the signer authorizer")
        return LocalSignerAuthorizer(config.payer_private_key, max_spend_cents=config.max_spend_cents)
    if config.authorizer == "policy":
        if not config.policy_api_url:
            raise AuthorizerError("POLICY_API_URL is required for the policy authorizer")
        return PolicyDelegateAuthorizer(
            config.policy_api_url,
            api_key=config.policy_api_key,
            timeout=config.timeout,
        )
    return MockAuthorizer(
        price_cents=config.price_cents,
        currency=config.currency,
        policy_label=config.policy_label,
        vendor_name=config.seller_name,
    )
