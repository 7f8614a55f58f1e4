"""
Budget tracking for x402 payments.

Each ``BudgetLedger`` is the single writer for one (agent, service) budget.
State lives in an immutable ``BudgetState`` snapshot; every mutation builds a
new snapshot and swaps it in under the ledger's lock, so a check and its
debit are one atomic step and readers always see a consistent snapshot.

The daily window is a rolling 24-hour window anchored at ``window_start``.
Rollover is applied lazily on the next debit (``check_and_reserve``) and
virtually on reads (``get_remaining_budget``). Weekly limits are not tracked
here.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import (
    AmountExceedsPerRequestLimitError,
    AssetNotAllowedError,
    DailyBudgetExceededError,
    DomainNotAllowedError,
    NothingToRollbackError,
    TotalBudgetExceededError,
)
from .money import format_base_units
from .policy import X402Budget, normalize_domain

logger = logging.getLogger(__name__)


DAY_SECONDS = 86_400


@dataclass(frozen=True)
class PaymentRecord:
    """A single debit against a ledger."""

    amount: int
    resource: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "resource": self.resource,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class BudgetState:
    """Snapshot of what a ledger has spent."""

    spent_today: int = 0
    spent_total: int = 0
    window_start: int = 0
    records: tuple[PaymentRecord, ...] = field(default_factory=tuple)

    @classmethod
    def initial(cls, window_start: int = 0) -> "BudgetState":
        return cls(window_start=window_start)

    def rolled_over(self, now: int) -> "BudgetState":
        """Return the state as it looks at ``now`` after any window rollover."""
        elapsed = now - self.window_start
        if elapsed < DAY_SECONDS:
            return self
        days = elapsed // DAY_SECONDS
        return replace(self, spent_today=0, window_start=self.window_start + days * DAY_SECONDS)

    def in_window(self, record: PaymentRecord) -> bool:
        return self.window_start <= record.timestamp < self.window_start + DAY_SECONDS


@dataclass(frozen=True)
class RemainingBudget:
    """What could still be spent right now."""

    per_request: int
    daily: int
    total: int

    def to_dict(self) -> dict:
        return {
            "per_request": str(self.per_request),
            "daily": str(self.daily),
            "total": str(self.total),
        }


class BudgetLedger:
    """
    Single-writer budget cell for one agent/service pairing.

    ``check_and_reserve`` applies the checks in a fixed order (domain, asset,
    per-request, rollover, daily, total) and debits only when every check
    passes. A rejected attempt leaves the state untouched.
    """

    def __init__(
        self,
        budget: X402Budget,
        window_start: int = 0,
        state: Optional[BudgetState] = None,
    ):
        self._budget = budget
        self._state = state if state is not None else BudgetState.initial(window_start)
        self._lock = threading.Lock()

    @property
    def budget(self) -> X402Budget:
        return self._budget

    @property
    def state(self) -> BudgetState:
        return self._state

    def check_and_reserve(
        self,
        amount: int,
        domain: str,
        now: int,
        resource: str = "",
        asset: Optional[str] = None,
    ) -> BudgetState:
        """
        Debit ``amount`` if the budget permits it and return the new state.

        ``asset`` is checked against the budget's asset allowlist when given.
        """
        if amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {amount}")

        budget = self._budget
        with self._lock:
            if not budget.allows_domain(domain):
                logger.warning("Rejected payment to %s: domain not allowed", domain)
                raise DomainNotAllowedError(normalize_domain(domain))

            if asset is not None and not budget.allows_asset(asset):
                logger.warning("Rejected payment in %s: asset not allowed", asset)
                raise AssetNotAllowedError(asset)

            if amount > budget.max_per_request:
                logger.warning(
                    "Rejected payment of %s: per-request limit %s",
                    format_base_units(amount),
                    format_base_units(budget.max_per_request),
                )
                raise AmountExceedsPerRequestLimitError(amount, budget.max_per_request)

            current = self._state.rolled_over(now)
            if current is not self._state:
                logger.debug(
                    "Daily window rolled over: %s -> %s",
                    self._state.window_start,
                    current.window_start,
                )

            remaining_daily = budget.daily_budget - current.spent_today
            if amount > remaining_daily:
                logger.warning(
                    "Rejected payment of %s: daily remaining %s",
                    format_base_units(amount),
                    format_base_units(remaining_daily),
                )
                raise DailyBudgetExceededError(amount, max(0, remaining_daily))

            remaining_total = budget.total_budget - current.spent_total
            if amount > remaining_total:
                logger.warning(
                    "Rejected payment of %s: total remaining %s",
                    format_base_units(amount),
                    format_base_units(remaining_total),
                )
                raise TotalBudgetExceededError(amount, max(0, remaining_total))

            record = PaymentRecord(amount=amount, resource=resource, timestamp=now)
            self._state = replace(
                current,
                spent_today=current.spent_today + amount,
                spent_total=current.spent_total + amount,
                records=current.records + (record,),
            )
            logger.info(
                "Reserved %s for %s (today %s, total %s)",
                format_base_units(amount),
                resource or domain,
                format_base_units(self._state.spent_today),
                format_base_units(self._state.spent_total),
            )
            return self._state

    def get_remaining_budget(self, now: int) -> RemainingBudget:
        """Remaining allowance after a virtual rollover. Does not mutate."""
        state = self._state.rolled_over(now)
        budget = self._budget
        daily = max(0, budget.daily_budget - state.spent_today)
        total = max(0, budget.total_budget - state.spent_total)
        return RemainingBudget(
            per_request=min(budget.max_per_request, daily, total),
            daily=daily,
            total=total,
        )

    def _without(self, state: BudgetState, index: int) -> BudgetState:
        record = state.records[index]
        spent_today = state.spent_today
        if state.in_window(record):
            spent_today = max(0, spent_today - record.amount)
        return replace(
            state,
            spent_today=spent_today,
            spent_total=max(0, state.spent_total - record.amount),
            records=state.records[:index] + state.records[index + 1:],
        )

    def rollback_last_record(self) -> PaymentRecord:
        """Undo the most recent debit. Used when settlement fails."""
        with self._lock:
            if not self._state.records:
                raise NothingToRollbackError("No payment records to roll back")
            record = self._state.records[-1]
            self._state = self._without(self._state, len(self._state.records) - 1)
        logger.info("Rolled back %s for %s", format_base_units(record.amount), record.resource)
        return record

    def release(self, record: PaymentRecord) -> None:
        """Undo one specific debit, even if later debits were made since."""
        with self._lock:
            for index in range(len(self._state.records) - 1, -1, -1):
                if self._state.records[index] == record:
                    self._state = self._without(self._state, index)
                    break
            else:
                raise NothingToRollbackError(f"Record not found in ledger: {record}")
        logger.info("Released %s for %s", format_base_units(record.amount), record.resource)


class BudgetRegistry:
    """
    Ledgers keyed by (agent_id, service).

    The registry lock only covers lookup and creation. Debits serialize on
    the individual ledger, so unrelated pairings never contend.
    """

    def __init__(self):
        self._ledgers: dict[tuple[str, str], BudgetLedger] = {}
        self._lock = threading.Lock()

    def ledger_for(
        self,
        agent_id: str,
        service: str,
        budget: X402Budget,
        window_start: int = 0,
    ) -> BudgetLedger:
        key = (agent_id, normalize_domain(service))
        with self._lock:
            ledger = self._ledgers.get(key)
            if ledger is None:
                ledger = BudgetLedger(budget, window_start=window_start)
                self._ledgers[key] = ledger
            return ledger

    def get(self, agent_id: str, service: str) -> Optional[BudgetLedger]:
        with self._lock:
            return self._ledgers.get((agent_id, normalize_domain(service)))

    def drop(self, agent_id: str, service: str) -> bool:
        with self._lock:
            return self._ledgers.pop((agent_id, normalize_domain(service)), None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._ledgers)
