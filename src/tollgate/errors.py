"""
Tollgate error types.

Specific exceptions for each failure mode so callers can tell a business
rejection (budget, domain, policy) from corrupt input or a signing failure.
Nothing in the core retries; the same inputs always produce the same error.
"""

from __future__ import annotations

from typing import Optional, Sequence


class TollgateError(Exception):
    """Base error for all Tollgate operations."""
    pass


# Validation / decoding
class ValidationError(TollgateError, ValueError):
    """A policy or requirement is malformed and must be corrected by the caller."""

    def __init__(self, message: str, issues: Optional[Sequence[object]] = None):
        self.issues = list(issues or [])
        super().__init__(message)


class DecodeError(TollgateError, ValueError):
    """Wire data is corrupt or unsupported. Never silently coerced."""
    pass


class UnsupportedSchemeError(DecodeError):
    """Payment header names a version or scheme this client does not speak."""
    pass


class MalformedPayloadError(DecodeError):
    """Payment header or its payload is structurally invalid."""
    pass


# Budget rejections
class BudgetError(TollgateError):
    """Base error for budget ledger rejections."""
    pass


class DomainNotAllowedError(BudgetError):
    """Payment target domain is not in the budget's allowlist."""

    def __init__(self, domain: str, message: Optional[str] = None):
        self.domain = domain
        super().__init__(message or f"Domain {domain!r} is not in the allowed domains")


class AssetNotAllowedError(BudgetError):
    """Requirement asks to be paid in a token the budget does not cover."""

    def __init__(self, asset: str):
        self.asset = asset
        super().__init__(f"Asset {asset} is not in the allowed assets")


class BudgetExceededError(BudgetError):
    """Amount would break one of the budget ceilings."""

    def __init__(self, message: str, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(message)


class AmountExceedsPerRequestLimitError(BudgetExceededError):
    """Amount exceeds the per-request ceiling."""

    def __init__(self, amount: int, limit: int):
        self.limit = limit
        super().__init__(f"Amount {amount} exceeds per-request limit {limit}", amount, limit)


class DailyBudgetExceededError(BudgetExceededError):
    """Amount would push the current daily window over its budget."""

    def __init__(self, amount: int, remaining: int):
        super().__init__(
            f"Amount {amount} exceeds remaining daily budget {remaining}", amount, remaining
        )


class TotalBudgetExceededError(BudgetExceededError):
    """Amount would push lifetime spend over the total budget."""

    def __init__(self, amount: int, remaining: int):
        super().__init__(
            f"Amount {amount} exceeds remaining total budget {remaining}", amount, remaining
        )


class NothingToRollbackError(BudgetError):
    """Ledger has no record to roll back."""
    pass


# Policy
class PolicyViolationError(TollgateError):
    """Requested action is not permitted by the agent's policy."""
    pass


# Session keys
class SessionError(TollgateError):
    """Base error for session key issues."""
    pass


class SessionKeyExpiredError(SessionError):
    """Session key is past its expiry. Generate a replacement."""
    pass


class InvalidKeyMaterialError(TollgateError, ValueError):
    """Private key bytes have the wrong length or are outside the curve order."""
    pass


# Signing
class SigningError(TollgateError):
    """The local signing backend failed to produce a signature."""
    pass
