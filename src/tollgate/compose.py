"""
Build agent policies out of small rule values.

Rules fold left to right: allowlists accumulate (deduplicated), spending and
expiry rules replace whatever an earlier rule set.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from .policy import AgentPolicy, create_agent_policy, normalize_hex, normalize_selector


@dataclass(frozen=True)
class ContractAllowlist:
    targets: tuple[str, ...] = ()


@dataclass(frozen=True)
class FunctionAllowlist:
    selectors: tuple[str, ...] = ()


@dataclass(frozen=True)
class SpendingRule:
    max_per_tx: int
    daily_limit: int
    weekly_limit: int


@dataclass(frozen=True)
class ExpiryRule:
    expires_at: Optional[int]


PolicyRule = Union[ContractAllowlist, FunctionAllowlist, SpendingRule, ExpiryRule]


def _dedupe(values: Iterable[str], normalize) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(normalize(value), None)
    return tuple(seen)


def merge_allowlists(a: ContractAllowlist, b: ContractAllowlist) -> ContractAllowlist:
    return ContractAllowlist(targets=_dedupe([*a.targets, *b.targets], normalize_hex))


def merge_function_allowlists(a: FunctionAllowlist, b: FunctionAllowlist) -> FunctionAllowlist:
    return FunctionAllowlist(
        selectors=_dedupe([*a.selectors, *b.selectors], normalize_selector)
    )


def create_policy_from_rules(rules: Iterable[PolicyRule], created_at: int = 0) -> AgentPolicy:
    """Fold rules into an AgentPolicy. Does not validate the result."""
    targets = ContractAllowlist()
    selectors = FunctionAllowlist()
    spending = SpendingRule(0, 0, 0)
    expires_at: Optional[int] = None

    for rule in rules:
        if isinstance(rule, ContractAllowlist):
            targets = merge_allowlists(targets, rule)
        elif isinstance(rule, FunctionAllowlist):
            selectors = merge_function_allowlists(selectors, rule)
        elif isinstance(rule, SpendingRule):
            spending = rule
        elif isinstance(rule, ExpiryRule):
            expires_at = rule.expires_at
        else:
            raise TypeError(f"Unknown policy rule: {rule!r}")

    return create_agent_policy(
        allowed_targets=targets.targets,
        allowed_selectors=selectors.selectors,
        max_amount_per_tx=spending.max_per_tx,
        daily_limit=spending.daily_limit,
        weekly_limit=spending.weekly_limit,
        created_at=created_at,
        expires_at=expires_at,
    )


def extend_policy(base: AgentPolicy, **overrides) -> AgentPolicy:
    """Return a copy of ``base`` with the given fields replaced."""
    if "allowed_targets" in overrides:
        overrides["allowed_targets"] = frozenset(
            normalize_hex(t) for t in overrides["allowed_targets"]
        )
    if "allowed_selectors" in overrides:
        overrides["allowed_selectors"] = frozenset(
            normalize_selector(s) for s in overrides["allowed_selectors"]
        )
    return dataclasses.replace(base, **overrides)
