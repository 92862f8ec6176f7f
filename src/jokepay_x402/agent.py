"""Client agent: request, receive a 402 challenge, authorize, retry with X-PAYMENT."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .authorizer import Approval, Authorizer, Challenge
from .codec import encode_header, normalize_header
from .constants import DEFAULT_TIMEOUT_SECONDS, PAYMENT_HEADER

JsonDict = Dict[str, Any]
logger = logging.getLogger(__name__)


class AgentError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UnexpectedStatusError(AgentError):
    """The endpoint answered with something other than 200 or 402."""


class InvalidChallengeError(AgentError):
    """The 402 body is missing price, vendor or nonce."""


class AuthorizationDeniedError(AgentError):
    """The authorizer declined the spend."""


class PaymentRejectedError(AgentError):
    """The paid retry did not return 200."""


class AgentTimeoutError(AgentError):
    """A round trip exceeded its timeout."""


@dataclass
class AgentResult:
    status: int
    joke: Optional[str]
    paid: bool
    body: Any
    audit: Optional[JsonDict] = None
    audit_source: Optional[str] = None


def _safe_json(response: httpx.Response) -> Any:
    raw = response.text
    if not raw:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": raw}


class PaymentAgent:
    def __init__(
        self,
        url: str,
        authorizer: Authorizer,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        memo: str = "tell me a joke",
    ) -> None:
        self._url = url
        self._authorizer = authorizer
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._memo = memo

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        closer = getattr(self._authorizer, "aclose", None)
        if closer is not None:
            await closer()

    async def _get(self, payment_header: Optional[str] = None) -> httpx.Response:
        headers = {PAYMENT_HEADER: payment_header} if payment_header else {}
        try:
            return await self._get_client().get(self._url, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise AgentTimeoutError(f"request to {self._url} timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise AgentError(f"request to {self._url} failed: {exc}") from exc

    async def run(self) -> AgentResult:
        logger.info("requesting %s for %r", self._url, self._memo)
        first = await self._get()
        if first.status_code == 200:
            body = _safe_json(first)
            return self._result(first.status_code, body, paid=False)
        if first.status_code != 402:
            body = _safe_json(first)
            raise UnexpectedStatusError(
                f"Unexpected response: {first.status_code}", status=first.status_code, body=body
            )

        body = _safe_json(first)
        try:
            challenge = Challenge.from_body(body)
        except ValueError as exc:
            raise InvalidChallengeError(str(exc), status=402, body=body) from exc
        logger.info("payment required: %s %s to %s", challenge.amount, challenge.currency, challenge.vendor)

        approval = await self._authorizer.authorize(challenge, self._memo)
        header = self._payment_header(approval)

        paid = await self._get(header)
        if paid.status_code != 200:
            body = _safe_json(paid)
            raise PaymentRejectedError(
                f"Payment attempt failed ({paid.status_code})", status=paid.status_code, body=body
            )

        result = self._result(paid.status_code, _safe_json(paid), paid=True)
        if approval.audit_id:
            audit = await self._maybe_fetch_audit(approval.audit_id)
            if audit is not None:
                result.audit = audit
                result.audit_source = "authorizer"
        return result

    @staticmethod
    def _payment_header(approval: Approval) -> str:
        if not approval.approved or (approval.credential is None and not approval.header):
            reason = approval.reason or "no credential returned"
            raise AuthorizationDeniedError(f"Authorizer denied the spend ({reason})", body=approval)
        if approval.credential is not None:
            return encode_header(approval.credential)
        return normalize_header(approval.header)

    async def _maybe_fetch_audit(self, audit_id: str) -> Optional[JsonDict]:
        fetch = getattr(self._authorizer, "fetch_audit", None)
        if fetch is None:
            return None
        try:
            return await fetch(audit_id)
        except Exception as exc:
            logger.warning("failed to fetch audit %s: %s", audit_id, exc)
            return None

    @staticmethod
    def _result(status: int, body: Any, *, paid: bool) -> AgentResult:
        joke = body.get("joke") if isinstance(body, dict) else None
        audit = body.get("audit") if isinstance(body, dict) else None
        return AgentResult(
            status=status,
            joke=joke,
            paid=paid,
            body=body,
            audit=audit if isinstance(audit, dict) else None,
            audit_source="response" if isinstance(audit, dict) else None,
        )


def format_report(result: AgentResult) -> str:
    lines = [f"Joke: {result.joke}"]
    audit = result.audit
    if audit:
        tx = audit.get("tx") or audit.get("transaction") or "n/a"
        lines.append(
            f"spent: {audit.get('spent')} {audit.get('currency')} | tx: {tx} "
            f"| vendor: {audit.get('vendor', 'unknown')}"
        )
    elif not result.paid:
        lines.append("no payment was required")
    return "\n".join(lines)
