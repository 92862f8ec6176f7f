"""Challenge server: invoice issuance, verification, settlement and response shaping.

The class here knows nothing about the web framework; it returns
``ChallengeResponse`` values that ``jokepay_x402.http`` turns into responses.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .codec import DecodeFailure, decode_header
from .config import ServerConfig
from .constants import (
    REASON_SETTLEMENT_FAILED,
    REASON_UNKNOWN_INVOICE,
    REASON_UNSUPPORTED_SCHEME,
    REQUEST_ID_HEADER,
)
from .facilitator import Facilitator, SettlementError, Settlement
from .invoices import Invoice, InvoiceStore, isoformat, utcnow
from .jokes import select_joke
from .pricing import format_cents

JsonDict = Dict[str, Any]
logger = logging.getLogger(__name__)


@dataclass
class ChallengeResponse:
    status: int
    body: JsonDict
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditRecord:
    spent: str
    currency: str
    tx: str
    policy: str
    vendor: str
    payer: Optional[str] = None
    network: Optional[str] = None

    def to_dict(self) -> JsonDict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ChallengeServer:
    def __init__(
        self,
        config: ServerConfig,
        facilitator: Facilitator,
        *,
        store: Optional[InvoiceStore] = None,
        clock: Callable[[], datetime] = utcnow,
        joke_picker: Callable[[], str] = select_joke,
    ) -> None:
        self.config = config
        self.facilitator = facilitator
        self.store = store if store is not None else InvoiceStore()
        self._clock = clock
        self._joke_picker = joke_picker
        self._sweeper: Optional[asyncio.Task] = None

    # =========================================================================
    # Request handling
    # =========================================================================

    async def handle(self, payment_header: Optional[str], request_id: Optional[str] = None) -> ChallengeResponse:
        request_id = request_id or str(uuid.uuid4())
        if payment_header is None:
            return self.issue_challenge(request_id)
        return await self.redeem(payment_header, request_id)

    def issue_challenge(self, request_id: str) -> ChallengeResponse:
        invoice = Invoice.issue(
            request_id=request_id,
            price_cents=self.config.price_cents,
            currency=self.config.currency,
            resource=self.config.resource,
            pay_to=self.config.pay_to,
            network=self.config.network,
            scheme=self.config.payment_scheme,
            ttl_ms=self.config.invoice_ttl_ms,
            now=self._clock(),
        )
        self.store.put(invoice)
        logger.info("issued invoice nonce=%s request=%s", invoice.nonce, request_id)
        return ChallengeResponse(402, self.challenge_body(invoice), {REQUEST_ID_HEADER: request_id})

    def challenge_body(self, invoice: Invoice) -> JsonDict:
        cfg = self.config
        return {
            "error": "payment_required",
            "request_id": invoice.request_id,
            "invoice_nonce": invoice.nonce,
            "price": {"amount": invoice.amount, "currency": invoice.currency},
            "price_cents": invoice.price_cents,
            "facilitator": {
                "url": cfg.facilitator_url,
                "pay_to": invoice.pay_to,
                "network": invoice.network,
            },
            "payment": {
                "scheme": invoice.scheme,
                "asset": {
                    "address": cfg.asset_address,
                    "decimals": cfg.asset_decimals,
                    "symbol": invoice.currency,
                },
            },
            "seller": {"id": invoice.pay_to, "name": cfg.seller_name},
            "policy": {"label": cfg.policy_label},
            "resource": invoice.resource,
            "mime_type": cfg.mime_type,
            "ttl_ms": cfg.invoice_ttl_ms,
            "protocol_version": cfg.protocol_version,
            "expires_at": isoformat(invoice.expires_at),
            "created_at": isoformat(invoice.created_at),
        }

    async def redeem(self, payment_header: str, request_id: str) -> ChallengeResponse:
        headers = {REQUEST_ID_HEADER: request_id}

        credential = decode_header(payment_header)
        if isinstance(credential, DecodeFailure):
            logger.warning("rejected X-PAYMENT request=%s reason=%s", request_id, credential.reason)
            return self._rejection(credential.reason, {"message": credential.message}, headers)

        if credential.scheme not in self.facilitator.schemes:
            logger.warning("rejected scheme=%s request=%s", credential.scheme, request_id)
            return self._rejection(
                REASON_UNSUPPORTED_SCHEME,
                {"accepted_schemes": list(self.facilitator.schemes)},
                headers,
            )

        invoice = self.store.take_if_valid(credential.nonce, self._clock())
        if invoice is None:
            logger.warning("unknown or expired invoice nonce=%s request=%s", credential.nonce, request_id)
            return self._rejection(
                REASON_UNKNOWN_INVOICE,
                {"message": "unknown or expired invoice"},
                headers,
            )

        verification = await self.facilitator.verify(credential, invoice)
        if not verification.ok:
            logger.warning(
                "verification failed nonce=%s reason=%s", invoice.nonce, verification.reason
            )
            return self._rejection(verification.reason or "payment_invalid", verification.detail, headers)

        try:
            settlement = await self.facilitator.settle(verification)
        except SettlementError as exc:
            logger.error("settlement failed nonce=%s: %s", invoice.nonce, exc)
            body: JsonDict = {
                "error": REASON_SETTLEMENT_FAILED,
                "reason": str(exc),
                "hint": "The invoice was consumed; request a new payment challenge.",
            }
            return ChallengeResponse(502, body, headers)

        audit = self.audit_record(invoice, settlement)
        logger.info("fulfilled nonce=%s tx=%s payer=%s", invoice.nonce, settlement.tx_id, settlement.payer)
        return ChallengeResponse(200, {"joke": self._joke_picker(), "audit": audit.to_dict()}, headers)

    def audit_record(self, invoice: Invoice, settlement: Settlement) -> AuditRecord:
        return AuditRecord(
            spent=format_cents(invoice.price_cents),
            currency=invoice.currency,
            tx=settlement.tx_id,
            policy=self.config.policy_label,
            vendor=self.config.seller_name,
            payer=settlement.payer,
            network=settlement.network,
        )

    @staticmethod
    def _rejection(reason: str, detail: JsonDict, headers: Dict[str, str]) -> ChallengeResponse:
        body: JsonDict = {"error": "payment_invalid", "reason": reason}
        for key, value in detail.items():
            body.setdefault(key, value)
        return ChallengeResponse(402, body, headers)

    # =========================================================================
    # Background sweep
    # =========================================================================

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.store.sweep_expired(self._clock())

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        await self.stop_sweeper()
        await self.facilitator.aclose()
