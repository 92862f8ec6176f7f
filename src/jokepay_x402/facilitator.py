"""Facilitator adapters: verify and settle payments against a settlement authority."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError
from x402.schemas import PaymentRequirements, SettleResponse, VerifyResponse

from .codec import PaymentCredential
from .constants import (
    DEFAULT_TIMEOUT_SECONDS,
    DEMO_SCHEME,
    REASON_FACILITATOR_ERROR,
    REASON_FACILITATOR_REJECTED,
    TOKEN_EXPIRY_MARGIN_SECONDS,
    X402_SCHEME,
    X402_VERSION,
)
from .invoices import Invoice, utcnow
from .pricing import to_atomic_units

if TYPE_CHECKING:
    from .config import ServerConfig

JsonDict = Dict[str, Any]
logger = logging.getLogger(__name__)


class FacilitatorError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        reason: str = REASON_FACILITATOR_ERROR,
        status: Optional[int] = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status
        self.response = response


class TokenError(FacilitatorError):
    """Raised when the client-credentials exchange fails."""


class SettlementError(FacilitatorError):
    """Raised when the authority does not settle a verified payment."""


@dataclass
class Verification:
    ok: bool
    reason: Optional[str] = None
    detail: JsonDict = field(default_factory=dict)
    payer: Optional[str] = None
    invoice: Optional[Invoice] = None
    credential: Optional[PaymentCredential] = None
    requirements: Optional[PaymentRequirements] = None

    @classmethod
    def accepted(
        cls,
        invoice: Invoice,
        credential: PaymentCredential,
        *,
        payer: Optional[str] = None,
        requirements: Optional[PaymentRequirements] = None,
    ) -> "Verification":
        return cls(
            ok=True,
            payer=payer,
            invoice=invoice,
            credential=credential,
            requirements=requirements,
        )

    @classmethod
    def rejected(cls, reason: str, detail: Optional[JsonDict] = None) -> "Verification":
        return cls(ok=False, reason=reason, detail=dict(detail or {}))


@dataclass(frozen=True)
class Settlement:
    tx_id: str
    payer: Optional[str]
    network: str


class Facilitator(Protocol):
    schemes: Tuple[str, ...]

    async def verify(self, credential: PaymentCredential, invoice: Invoice) -> Verification:
        ...

    async def settle(self, verification: Verification) -> Settlement:
        ...

    async def aclose(self) -> None:
        ...


# =========================================================================
# Mock facilitator (in-memory, always approves)
# =========================================================================


class MockFacilitator:
    """Approves any credential whose invoice was found in the store."""

    schemes: Tuple[str, ...] = (DEMO_SCHEME, X402_SCHEME)

    async def verify(self, credential: PaymentCredential, invoice: Invoice) -> Verification:
        if credential.scheme not in self.schemes or credential.nonce != invoice.nonce:
            return Verification.rejected(
                REASON_FACILITATOR_REJECTED,
                {"facilitator_reason": "credential_does_not_match_invoice"},
            )
        return Verification.accepted(invoice, credential, payer=credential.payer or "mock-payer")

    async def settle(self, verification: Verification) -> Settlement:
        if not verification.ok or verification.invoice is None:
            raise SettlementError("cannot settle a rejected verification")
        return Settlement(
            tx_id=f"mock-tx-{uuid.uuid4()}",
            payer=verification.payer,
            network=verification.invoice.network,
        )

    async def aclose(self) -> None:
        return None


# =========================================================================
# Authentication
# =========================================================================


class AuthProvider(Protocol):
    async def get_auth_headers(self) -> Dict[str, str]:
        ...


class StaticKeyAuth:
    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def get_auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}


class ClientCredentialsTokenProvider:
    """OAuth client-credentials token cache.

    Tokens are treated as expired ``TOKEN_EXPIRY_MARGIN_SECONDS`` early. A
    single lock serializes refreshes so concurrent callers share one fetch.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        scope: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _cached(self) -> Optional[str]:
        if self._token is not None and self._clock() < self._expires_at:
            return self._token
        return None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def get_token(self) -> str:
        token = self._cached()
        if token is not None:
            return token
        async with self._lock:
            token = self._cached()
            if token is not None:
                return token
            token, expires_in = await self._fetch_token()
            self._token = token
            self._expires_at = self._clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            return token

    async def get_auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.get_token()}"}

    async def _fetch_token(self) -> Tuple[str, float]:
        form = {"grant_type": "client_credentials"}
        if self._scope:
            form["scope"] = self._scope
        logger.info("fetching facilitator access token from %s", self._token_url)
        try:
            response = await self._get_client().post(
                self._token_url,
                data=form,
                auth=(self._client_id, self._client_secret),
            )
        except httpx.TimeoutException as exc:
            raise TokenError(f"token request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TokenError(f"token request failed: {exc}") from exc

        if response.status_code != 200:
            raise TokenError(
                f"token endpoint responded with {response.status_code}: {response.text}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenError("token endpoint returned invalid JSON") from exc

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise TokenError("token response missing access_token", response=payload)
        try:
            expires_in = float(payload.get("expires_in", 60))
        except (TypeError, ValueError) as exc:
            raise TokenError("token response included invalid expires_in") from exc
        return str(token), expires_in

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


# =========================================================================
# Remote facilitator (authenticated HTTP)
# =========================================================================


class RemoteFacilitator:
    """Forwards verify/settle to an x402 facilitator over HTTP."""

    schemes: Tuple[str, ...] = (X402_SCHEME,)

    def __init__(
        self,
        url: str,
        *,
        asset_address: str,
        asset_decimals: int,
        asset_name: str = "USDC",
        mime_type: str = "application/json",
        protocol_version: int = X402_VERSION,
        auth: Optional[AuthProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._url = url.rstrip("/")
        self._asset_address = asset_address
        self._asset_decimals = asset_decimals
        self._asset_name = asset_name
        self._mime_type = mime_type
        self._protocol_version = protocol_version
        self._auth = auth
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._clock = clock

    @property
    def url(self) -> str:
        return self._url

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        closer = getattr(self._auth, "aclose", None)
        if closer is not None:
            await closer()

    def build_requirements(self, invoice: Invoice, now: Optional[datetime] = None) -> PaymentRequirements:
        now = now or self._clock()
        return PaymentRequirements(
            scheme=invoice.scheme,
            network=invoice.network,
            asset=self._asset_address,
            amount=str(to_atomic_units(invoice.price_cents, self._asset_decimals)),
            pay_to=invoice.pay_to,
            max_timeout_seconds=invoice.seconds_remaining(now),
            extra={
                "invoice_nonce": invoice.nonce,
                "resource": invoice.resource,
                "mimeType": self._mime_type,
                "name": self._asset_name,
            },
        )

    def _request_body(self, credential: PaymentCredential, requirements: PaymentRequirements) -> JsonDict:
        payload = credential.proof or {"scheme": credential.scheme, "nonce": credential.nonce}
        return {
            "x402Version": payload.get("x402Version", self._protocol_version),
            "paymentPayload": payload,
            "paymentRequirements": requirements.model_dump(by_alias=True, exclude_none=True),
        }

    async def _post(self, operation: str, body: JsonDict) -> Tuple[int, Any]:
        headers = {"Content-Type": "application/json"}
        if self._auth is not None:
            headers.update(await self._auth.get_auth_headers())
        endpoint = f"{self._url}/{operation}"
        try:
            response = await self._get_client().post(endpoint, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise FacilitatorError(f"facilitator {operation} timed out at {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise FacilitatorError(f"failed to contact facilitator at {endpoint}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        return response.status_code, payload

    async def verify(self, credential: PaymentCredential, invoice: Invoice) -> Verification:
        requirements = self.build_requirements(invoice)
        body = self._request_body(credential, requirements)
        logger.info("POST %s/verify nonce=%s", self._url, invoice.nonce)
        try:
            status, payload = await self._post("verify", body)
        except FacilitatorError as exc:
            logger.warning("facilitator verify failed nonce=%s: %s", invoice.nonce, exc)
            return Verification.rejected(exc.reason, {"message": str(exc)})

        if not 200 <= status < 300:
            logger.warning("facilitator verify returned status=%s nonce=%s", status, invoice.nonce)
            return Verification.rejected(
                REASON_FACILITATOR_ERROR,
                {"message": f"facilitator verify failed ({status})", "status": status},
            )

        try:
            response = VerifyResponse.model_validate(payload)
        except ValidationError:
            logger.warning("facilitator verify returned unexpected payload status=%s", status)
            return Verification.rejected(
                REASON_FACILITATOR_ERROR,
                {"message": f"unexpected verify response ({status})", "status": status},
            )

        if not response.is_valid:
            sub_reason = response.invalid_reason or "facilitator rejected payment"
            logger.warning("facilitator verify rejected nonce=%s reason=%s", invoice.nonce, sub_reason)
            detail: JsonDict = {"facilitator_reason": sub_reason}
            if response.invalid_message:
                detail["message"] = response.invalid_message
            return Verification.rejected(REASON_FACILITATOR_REJECTED, detail)

        logger.info("facilitator verify success nonce=%s payer=%s", invoice.nonce, response.payer)
        return Verification.accepted(
            invoice,
            credential,
            payer=response.payer or credential.payer,
            requirements=requirements,
        )

    async def settle(self, verification: Verification) -> Settlement:
        if not verification.ok or verification.invoice is None or verification.credential is None:
            raise SettlementError("cannot settle a rejected verification")
        invoice = verification.invoice
        requirements = verification.requirements or self.build_requirements(invoice)
        body = self._request_body(verification.credential, requirements)
        logger.info("POST %s/settle nonce=%s", self._url, invoice.nonce)
        try:
            status, payload = await self._post("settle", body)
        except FacilitatorError as exc:
            raise SettlementError(str(exc), status=exc.status) from exc

        if status != 200 or not isinstance(payload, dict):
            raise SettlementError(
                f"Facilitator settle failed ({status})", status=status, response=payload
            )
        response = _normalize_settle_response(payload, requirements)
        if not response.success or not response.transaction:
            raise SettlementError(
                response.error_reason or "facilitator rejected settlement",
                status=status,
                response=payload,
            )

        logger.info("facilitator settle success nonce=%s tx=%s", invoice.nonce, response.transaction)
        return Settlement(
            tx_id=response.transaction,
            payer=response.payer or verification.payer,
            network=str(response.network or invoice.network),
        )


def _normalize_settle_response(payload: JsonDict, requirements: PaymentRequirements) -> SettleResponse:
    try:
        return SettleResponse.model_validate(payload)
    except ValidationError:
        pass

    tx = (
        payload.get("transaction")
        or payload.get("transactionHash")
        or payload.get("txHash")
        or payload.get("tx")
        or payload.get("hash")
    )
    network = payload.get("network") or payload.get("networkId") or str(requirements.network)
    error_reason = payload.get("errorReason") or payload.get("error_reason") or payload.get("error")
    success = bool(payload.get("success", error_reason is None))

    return SettleResponse(
        success=success,
        error_reason=error_reason,
        payer=payload.get("payer"),
        transaction=str(tx or ""),
        network=str(network),
    )


def build_facilitator(
    config: "ServerConfig",
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Facilitator:
    if config.mock_facilitator:
        return MockFacilitator()

    auth: Optional[AuthProvider] = None
    if config.facilitator_api_key:
        auth = StaticKeyAuth(config.facilitator_api_key)
    elif config.facilitator_token_url:
        auth = ClientCredentialsTokenProvider(
            config.facilitator_token_url,
            config.facilitator_client_id or "",
            config.facilitator_client_secret or "",
            scope=config.facilitator_scope,
            http_client=http_client,
            timeout=config.facilitator_timeout,
        )
    return RemoteFacilitator(
        config.facilitator_url,
        asset_address=config.asset_address,
        asset_decimals=config.asset_decimals,
        asset_name=config.currency,
        mime_type=config.mime_type,
        protocol_version=config.protocol_version,
        auth=auth,
        http_client=http_client,
        timeout=config.facilitator_timeout,
    )
