"""Outstanding payment challenges and their single-use store."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .pricing import format_cents

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_nonce() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Invoice:
    nonce: str
    request_id: str
    price_cents: int
    currency: str
    resource: str
    pay_to: str
    network: str
    scheme: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def issue(
        cls,
        *,
        request_id: str,
        price_cents: int,
        currency: str,
        resource: str,
        pay_to: str,
        network: str,
        scheme: str,
        ttl_ms: int,
        now: datetime,
        nonce: Optional[str] = None,
    ) -> "Invoice":
        return cls(
            nonce=nonce or new_nonce(),
            request_id=request_id,
            price_cents=price_cents,
            currency=currency,
            resource=resource,
            pay_to=pay_to,
            network=network,
            scheme=scheme,
            created_at=now,
            expires_at=now + timedelta(milliseconds=ttl_ms),
        )

    @property
    def amount(self) -> str:
        return format_cents(self.price_cents)

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at

    def seconds_remaining(self, now: datetime) -> int:
        return max(1, int((self.expires_at - now).total_seconds()))


class DuplicateInvoiceError(KeyError):
    """Raised when an invoice nonce is already outstanding."""


class InvoiceStore:
    """Thread-safe map of outstanding invoices keyed by nonce.

    All mutations go through one lock, so a nonce can be taken at most once
    even when request handlers and the sweeper race.
    """

    def __init__(self) -> None:
        self._invoices: Dict[str, Invoice] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._invoices)

    def __contains__(self, nonce: object) -> bool:
        with self._lock:
            return nonce in self._invoices

    def put(self, invoice: Invoice) -> None:
        with self._lock:
            if invoice.nonce in self._invoices:
                raise DuplicateInvoiceError(invoice.nonce)
            self._invoices[invoice.nonce] = invoice

    def take_if_valid(self, nonce: str, now: datetime) -> Optional[Invoice]:
        with self._lock:
            invoice = self._invoices.get(nonce)
            if invoice is None:
                return None
            del self._invoices[nonce]
        if not invoice.is_valid_at(now):
            logger.debug("dropped expired invoice nonce=%s", nonce)
            return None
        return invoice

    def sweep_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [n for n, inv in self._invoices.items() if inv.expires_at <= now]
            for nonce in expired:
                del self._invoices[nonce]
        if expired:
            logger.info("swept %d expired invoice(s)", len(expired))
        return len(expired)
