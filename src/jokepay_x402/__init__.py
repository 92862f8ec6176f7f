"""x402-style pay-per-request paywall: challenge server, facilitators and paying agent."""

from __future__ import annotations

from .agent import (
    AgentError,
    AgentResult,
    AgentTimeoutError,
    AuthorizationDeniedError,
    InvalidChallengeError,
    PaymentAgent,
    PaymentRejectedError,
    UnexpectedStatusError,
    format_report,
)
from .authorizer import (
    Approval,
    Authorizer,
    AuthorizerError,
    AuthorizerTimeoutError,
    Challenge,
    LocalSignerAuthorizer,
    MockAuthorizer,
    PolicyDelegateAuthorizer,
    build_authorizer,
)
from .codec import (
    DecodeFailure,
    PaymentCredential,
    decode_header,
    encode_header,
    normalize_header,
)
from .config import AgentConfig, ConfigError, ServerConfig
from .constants import (
    DEFAULT_ASSETS,
    UnsupportedNetworkError,
    get_default_asset,
)
from .facilitator import (
    ClientCredentialsTokenProvider,
    Facilitator,
    FacilitatorError,
    MockFacilitator,
    RemoteFacilitator,
    Settlement,
    SettlementError,
    StaticKeyAuth,
    TokenError,
    Verification,
    build_facilitator,
)
from .http import create_app
from .invoices import DuplicateInvoiceError, Invoice, InvoiceStore
from .pricing import format_cents, to_atomic_units
from .server import AuditRecord, ChallengeResponse, ChallengeServer

__all__ = [
    "AgentConfig",
    "AgentError",
    "AgentResult",
    "AgentTimeoutError",
    "Approval",
    "AuditRecord",
    "AuthorizationDeniedError",
    "Authorizer",
    "AuthorizerError",
    "AuthorizerTimeoutError",
    "Challenge",
    "ChallengeResponse",
    "ChallengeServer",
    "ClientCredentialsTokenProvider",
    "ConfigError",
    "DEFAULT_ASSETS",
    "DecodeFailure",
    "DuplicateInvoiceError",
    "Facilitator",
    "FacilitatorError",
    "InvalidChallengeError",
    "Invoice",
    "InvoiceStore",
    "LocalSignerAuthorizer",
    "MockAuthorizer",
    "MockFacilitator",
    "PaymentAgent",
    "PaymentCredential",
    "PaymentRejectedError",
    "PolicyDelegateAuthorizer",
    "RemoteFacilitator",
    "ServerConfig",
    "Settlement",
    "SettlementError",
    "StaticKeyAuth",
    "TokenError",
    "UnexpectedStatusError",
    "UnsupportedNetworkError",
    "Verification",
    "build_authorizer",
    "build_facilitator",
    "create_app",
    "decode_header",
    "encode_header",
    "format_cents",
    "format_report",
    "get_default_asset",
    "normalize_header",
    "to_atomic_units",
]
