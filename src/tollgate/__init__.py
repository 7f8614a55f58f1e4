"""
Tollgate: budgeted x402 payments for AI agents.

Policy-bounded spending with ephemeral session keys:
Human sets bounds → Agent pays within them → Every debit is accounted for.
"""

__version__ = "0.1.0"

from .policy import (
    AgentPolicy,
    PolicyIssue,
    SpendingLimit,
    X402Budget,
    create_agent_policy,
    create_spending_policy,
    create_x402_policy,
    is_policy_active,
    validate_agent_policy,
    validate_spending_limit,
    validate_x402_budget,
)
from .codec import (
    decode_agent_policy,
    decode_budget_state,
    decode_x402_budget,
    encode_agent_policy,
    encode_budget_state,
    encode_x402_budget,
)
from .session import (
    SessionKey,
    SessionKeyring,
    deserialize_session_key,
    generate_session_key,
    get_session_key_remaining_time,
    is_session_key_active,
    is_session_key_expired,
    serialize_session_key,
    session_key_from_private_material,
)
from .budget import BudgetLedger, BudgetRegistry, BudgetState, PaymentRecord, RemainingBudget
from .errors import (
    AssetNotAllowedError,
    BudgetError,
    DomainNotAllowedError,
    SigningError,
    TollgateError,
)
from .signing import LocalSigner, Signer
from .payment import (
    AuthorizedPayment,
    PaymentHeader,
    PaymentRequirement,
    authorize_payment,
    build_payment_header,
    generate_nonce,
    parse_payment_header,
    verify_payment_header,
)
from .config import PaymentConfig
from .client import PaymentResult, X402Client
from .audit import AuditTrail, EventType

__all__ = [
    "AgentPolicy", "X402Budget", "SpendingLimit", "PolicyIssue",
    "create_agent_policy", "validate_agent_policy", "is_policy_active",
    "create_x402_policy", "validate_x402_budget",
    "create_spending_policy", "validate_spending_limit",
    "encode_agent_policy", "decode_agent_policy", "encode_x402_budget", "decode_x402_budget",
    "encode_budget_state", "decode_budget_state",
    "SessionKey", "SessionKeyring", "generate_session_key", "session_key_from_private_material",
    "serialize_session_key", "deserialize_session_key",
    "is_session_key_expired", "is_session_key_active", "get_session_key_remaining_time",
    "BudgetLedger", "BudgetRegistry", "BudgetState", "PaymentRecord", "RemainingBudget",
    "PaymentRequirement", "PaymentHeader", "AuthorizedPayment",
    "authorize_payment", "build_payment_header", "parse_payment_header",
    "verify_payment_header", "generate_nonce",
    "PaymentConfig", "X402Client", "PaymentResult",
    "AuditTrail", "EventType",
    "Signer", "LocalSigner",
    "TollgateError", "BudgetError", "DomainNotAllowedError", "AssetNotAllowedError", "SigningError",
]
