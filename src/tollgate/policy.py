"""
Agent and payment policy values.

Two independent authorization planes:

* ``AgentPolicy`` limits what an agent may do on-chain (targets, selectors,
  per-tx / daily / weekly amounts, expiry).
* ``X402Budget`` limits what an agent may pay off-chain to x402 services.

Construction never fails and never validates; policies may be built
speculatively (for display) before they are committed. Callers must run the
matching ``validate_*`` function before trusting a policy. An empty allowlist
means nothing is permitted; only the explicit ``unrestricted`` flag opens an
agent policy up. The one exception is ``X402Budget.allowed_assets``: left
empty, the payment layer only pays in the network's USDC.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import PolicyViolationError, ValidationError


MAX_UINT256 = 2**256 - 1
MAX_UINT64 = 2**64 - 1

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_SELECTOR_RE = re.compile(r"^0x[0-9a-f]{8}$")


@dataclass(frozen=True)
class PolicyIssue:
    """One validation diagnostic."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class AgentPolicy:
    """On-chain spending authority delegated to an agent."""

    allowed_targets: frozenset[str]
    allowed_selectors: frozenset[str]
    max_amount_per_tx: int
    daily_limit: int
    weekly_limit: int
    created_at: int
    expires_at: Optional[int] = None
    unrestricted: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed_targets": sorted(self.allowed_targets),
            "allowed_selectors": sorted(self.allowed_selectors),
            "max_amount_per_tx": str(self.max_amount_per_tx),
            "daily_limit": str(self.daily_limit),
            "weekly_limit": str(self.weekly_limit),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "unrestricted": self.unrestricted,
        }


@dataclass(frozen=True)
class X402Budget:
    """Off-chain payment budget for one agent/service pairing."""

    max_per_request: int
    daily_budget: int
    total_budget: int
    allowed_domains: frozenset[str]
    allowed_assets: frozenset[str] = frozenset()

    def allows_domain(self, domain: str) -> bool:
        return normalize_domain(domain) in self.allowed_domains

    def allows_asset(self, asset: str) -> bool:
        """An empty asset allowlist leaves the choice of token to the caller."""
        if not self.allowed_assets:
            return True
        return normalize_hex(asset) in self.allowed_assets

    def to_dict(self) -> dict:
        return {
            "max_per_request": str(self.max_per_request),
            "daily_budget": str(self.daily_budget),
            "total_budget": str(self.total_budget),
            "allowed_domains": sorted(self.allowed_domains),
            "allowed_assets": sorted(self.allowed_assets),
        }


@dataclass(frozen=True)
class SpendingLimit:
    """Token spending cap for the on-chain spending-limit hook."""

    agent: str
    token: str
    daily_limit: int
    weekly_limit: int


def normalize_hex(value: str) -> str:
    candidate = value.strip().lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    return candidate


def normalize_selector(value: str) -> str:
    """Lower-case a selector, truncating full calldata to its first 4 bytes."""
    candidate = normalize_hex(value)
    return candidate[:10]


def normalize_domain(value: str) -> str:
    return value.strip().lower()


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value))


def is_selector(value: str) -> bool:
    return bool(_SELECTOR_RE.match(value))


def create_agent_policy(
    *,
    allowed_targets: Iterable[str] = (),
    allowed_selectors: Iterable[str] = (),
    max_amount_per_tx: int = 0,
    daily_limit: int = 0,
    weekly_limit: int = 0,
    created_at: int = 0,
    expires_at: Optional[int] = None,
    unrestricted: bool = False,
) -> AgentPolicy:
    """Build an agent policy. Does not validate."""
    return AgentPolicy(
        allowed_targets=frozenset(normalize_hex(t) for t in allowed_targets),
        allowed_selectors=frozenset(normalize_selector(s) for s in allowed_selectors),
        max_amount_per_tx=max_amount_per_tx,
        daily_limit=daily_limit,
        weekly_limit=weekly_limit,
        created_at=created_at,
        expires_at=expires_at,
        unrestricted=unrestricted,
    )


def create_x402_policy(
    *,
    max_per_request: int,
    daily_budget: int,
    total_budget: int,
    allowed_domains: Iterable[str] = (),
    allowed_assets: Iterable[str] = (),
) -> X402Budget:
    """Build an x402 payment budget. Does not validate."""
    return X402Budget(
        max_per_request=max_per_request,
        daily_budget=daily_budget,
        total_budget=total_budget,
        allowed_domains=frozenset(normalize_domain(d) for d in allowed_domains),
        allowed_assets=frozenset(normalize_hex(a) for a in allowed_assets),
    )


def create_spending_policy(
    *,
    agent: str,
    token: str,
    daily_limit: int,
    weekly_limit: int,
) -> SpendingLimit:
    return SpendingLimit(
        agent=normalize_hex(agent),
        token=normalize_hex(token),
        daily_limit=daily_limit,
        weekly_limit=weekly_limit,
    )


def _check_uint(issues: list[PolicyIssue], field: str, value: int, upper: int) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.append(PolicyIssue(field, "must be an integer"))
        return False
    if value < 0:
        issues.append(PolicyIssue(field, "must be non-negative"))
        return False
    if value > upper:
        issues.append(PolicyIssue(field, f"must fit in {upper.bit_length()} bits"))
        return False
    return True


def _check_ordered(issues: list[PolicyIssue], pairs: list[tuple[str, int, str, int]]) -> None:
    for low_name, low, high_name, high in pairs:
        if low > high:
            issues.append(PolicyIssue(low_name, f"must not exceed {high_name} ({low} > {high})"))


def validate_agent_policy(policy: AgentPolicy) -> list[PolicyIssue]:
    """Return policy violations in a fixed order. Empty means valid."""
    issues: list[PolicyIssue] = []

    if not policy.allowed_targets and not policy.unrestricted:
        issues.append(PolicyIssue("allowed_targets", "empty allowlist permits nothing"))
    for target in sorted(policy.allowed_targets):
        if not is_address(target):
            issues.append(PolicyIssue("allowed_targets", f"{target} is not a 20-byte address"))

    if not policy.allowed_selectors and not policy.unrestricted:
        issues.append(PolicyIssue("allowed_selectors", "empty allowlist permits nothing"))
    for selector in sorted(policy.allowed_selectors):
        if not is_selector(selector):
            issues.append(PolicyIssue("allowed_selectors", f"{selector} is not a 4-byte selector"))

    limits_ok = all(
        [
            _check_uint(issues, "max_amount_per_tx", policy.max_amount_per_tx, MAX_UINT256),
            _check_uint(issues, "daily_limit", policy.daily_limit, MAX_UINT256),
            _check_uint(issues, "weekly_limit", policy.weekly_limit, MAX_UINT256),
        ]
    )
    if limits_ok:
        _check_ordered(
            issues,
            [
                ("max_amount_per_tx", policy.max_amount_per_tx, "daily_limit", policy.daily_limit),
                ("daily_limit", policy.daily_limit, "weekly_limit", policy.weekly_limit),
            ],
        )

    created_ok = _check_uint(issues, "created_at", policy.created_at, MAX_UINT64)
    if policy.expires_at is not None:
        expires_ok = _check_uint(issues, "expires_at", policy.expires_at, MAX_UINT64)
        if created_ok and expires_ok and policy.created_at > policy.expires_at:
            issues.append(PolicyIssue("expires_at", "must not be earlier than created_at"))

    return issues


def validate_x402_budget(budget: X402Budget) -> list[PolicyIssue]:
    issues: list[PolicyIssue] = []
    limits_ok = all(
        [
            _check_uint(issues, "max_per_request", budget.max_per_request, MAX_UINT256),
            _check_uint(issues, "daily_budget", budget.daily_budget, MAX_UINT256),
            _check_uint(issues, "total_budget", budget.total_budget, MAX_UINT256),
        ]
    )
    if limits_ok:
        _check_ordered(
            issues,
            [
                ("max_per_request", budget.max_per_request, "daily_budget", budget.daily_budget),
                ("daily_budget", budget.daily_budget, "total_budget", budget.total_budget),
            ],
        )
    if not budget.allowed_domains:
        issues.append(PolicyIssue("allowed_domains", "empty allowlist permits nothing"))
    for domain in sorted(budget.allowed_domains):
        if not domain or any(ch.isspace() for ch in domain):
            issues.append(PolicyIssue("allowed_domains", f"{domain!r} is not a valid origin"))
    for asset in sorted(budget.allowed_assets):
        if not is_address(asset):
            issues.append(PolicyIssue("allowed_assets", f"{asset} is not a 20-byte address"))
    return issues


def validate_spending_limit(limit: SpendingLimit) -> list[PolicyIssue]:
    issues: list[PolicyIssue] = []
    if not is_address(limit.agent):
        issues.append(PolicyIssue("agent", f"{limit.agent} is not a 20-byte address"))
    if not is_address(limit.token):
        issues.append(PolicyIssue("token", f"{limit.token} is not a 20-byte address"))
    limits_ok = all(
        [
            _check_uint(issues, "daily_limit", limit.daily_limit, MAX_UINT256),
            _check_uint(issues, "weekly_limit", limit.weekly_limit, MAX_UINT256),
        ]
    )
    if limits_ok:
        _check_ordered(
            issues, [("daily_limit", limit.daily_limit, "weekly_limit", limit.weekly_limit)]
        )
    return issues


def require_valid(issues: list[PolicyIssue], what: str = "policy") -> None:
    """Raise ValidationError if any issues were reported."""
    if issues:
        summary = "; ".join(str(issue) for issue in issues)
        raise ValidationError(f"Invalid {what}: {summary}", issues)


def is_policy_active(policy: AgentPolicy, now: int) -> bool:
    return policy.expires_at is None or now < policy.expires_at


def is_target_allowed(policy: AgentPolicy, target: str) -> bool:
    if policy.unrestricted:
        return True
    return normalize_hex(target) in policy.allowed_targets


def is_selector_allowed(policy: AgentPolicy, selector: str) -> bool:
    if policy.unrestricted:
        return True
    return normalize_selector(selector) in policy.allowed_selectors


def check_agent_call(
    policy: AgentPolicy,
    target: str,
    selector: str,
    amount: int,
    now: int,
) -> None:
    """Raise PolicyViolationError unless the policy permits this call."""
    issues = validate_agent_policy(policy)
    if issues:
        raise PolicyViolationError(f"Policy is invalid: {issues[0]}")
    if not is_policy_active(policy, now):
        raise PolicyViolationError(f"Policy expired at {policy.expires_at}")
    if not is_target_allowed(policy, target):
        raise PolicyViolationError(f"Target {target} is not in the policy allowlist")
    if not is_selector_allowed(policy, selector):
        raise PolicyViolationError(f"Selector {selector} is not in the policy allowlist")
    if amount > policy.max_amount_per_tx:
        raise PolicyViolationError(
            f"Amount {amount} exceeds per-transaction limit {policy.max_amount_per_tx}"
        )
