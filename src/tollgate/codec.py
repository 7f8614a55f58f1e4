"""
Binary encoding for policies and ledger state.

Big-endian, fixed-width integers, sets written in sorted order so equal
values always encode to identical bytes. Every layout starts with a version
byte. Decoders are strict: anything left over, cut short, or unknown is a
``DecodeError``.

AgentPolicy::

    version u8 | flags u8 | n u16 | n * target[20] | n u16 | n * selector[4]
    | max_amount_per_tx u256 | daily_limit u256 | weekly_limit u256
    | created_at u64 | expires_at u64

X402Budget::

    version u8 | max_per_request u256 | daily_budget u256 | total_budget u256
    | n u16 | n * (len u16 | utf-8 domain) | n u16 | n * asset[20]

BudgetState::

    version u8 | spent_today u256 | spent_total u256 | window_start u64
    | n u32 | n * (amount u256 | timestamp u64 | len u16 | utf-8 resource)
"""

from __future__ import annotations

from typing import Union

from .budget import BudgetState, PaymentRecord
from .errors import DecodeError, ValidationError
from .policy import (
    AgentPolicy,
    PolicyIssue,
    X402Budget,
    is_address,
    is_selector,
)


CODEC_VERSION = 0x01

FLAG_HAS_EXPIRY = 0x01
FLAG_UNRESTRICTED = 0x02
_KNOWN_FLAGS = FLAG_HAS_EXPIRY | FLAG_UNRESTRICTED

_U16_MAX = 0xFFFF


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def _as_bytes(data: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    text = data.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise DecodeError(f"Invalid hex input: {e}") from e


def _encode_error(field: str, message: str) -> ValidationError:
    return ValidationError(f"Cannot encode {field}: {message}", [PolicyIssue(field, message)])


def _uint(value: int, size: int, field: str) -> bytes:
    upper = (1 << (size * 8)) - 1
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= upper:
        raise _encode_error(field, f"must be an integer in [0, {upper}]")
    return value.to_bytes(size, "big")


def _text(value: str, field: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > _U16_MAX:
        raise _encode_error(field, "longer than 65535 bytes")
    return len(raw).to_bytes(2, "big") + raw


def _count(n: int, size: int, field: str) -> bytes:
    if n > (1 << (size * 8)) - 1:
        raise _encode_error(field, "too many entries")
    return n.to_bytes(size, "big")


class _Reader:
    """Cursor over a byte buffer that refuses to read past the end."""

    def __init__(self, data: bytes, what: str):
        self.data = data
        self.pos = 0
        self.what = what

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise DecodeError(
                f"Truncated {self.what}: need {n} bytes at offset {self.pos}, "
                f"have {len(self.data) - self.pos}"
            )
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def uint(self, size: int) -> int:
        return int.from_bytes(self.take(size), "big")

    def count(self, size: int, item_size: int) -> int:
        n = self.uint(size)
        if n * item_size > len(self.data) - self.pos:
            raise DecodeError(
                f"Length prefix {n} in {self.what} exceeds remaining {len(self.data) - self.pos} bytes"
            )
        return n

    def text(self) -> str:
        n = self.count(2, 1)
        raw = self.take(n)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 in {self.what}: {e}") from e

    def version(self) -> None:
        version = self.uint(1)
        if version != CODEC_VERSION:
            raise DecodeError(f"Unsupported {self.what} version: {version}")

    def finish(self) -> None:
        if self.pos != len(self.data):
            raise DecodeError(
                f"Trailing {len(self.data) - self.pos} bytes after {self.what}"
            )


# AgentPolicy


def encode_agent_policy(policy: AgentPolicy) -> bytes:
    """Encode an agent policy. Raises ValidationError for unencodable fields."""
    flags = 0
    if policy.expires_at is not None:
        flags |= FLAG_HAS_EXPIRY
    if policy.unrestricted:
        flags |= FLAG_UNRESTRICTED

    targets = sorted(policy.allowed_targets)
    selectors = sorted(policy.allowed_selectors)
    for target in targets:
        if not is_address(target):
            raise _encode_error("allowed_targets", f"{target} is not a 20-byte address")
    for selector in selectors:
        if not is_selector(selector):
            raise _encode_error("allowed_selectors", f"{selector} is not a 4-byte selector")

    out = bytearray([CODEC_VERSION, flags])
    out += _count(len(targets), 2, "allowed_targets")
    for target in targets:
        out += bytes.fromhex(target[2:])
    out += _count(len(selectors), 2, "allowed_selectors")
    for selector in selectors:
        out += bytes.fromhex(selector[2:])
    out += _uint(policy.max_amount_per_tx, 32, "max_amount_per_tx")
    out += _uint(policy.daily_limit, 32, "daily_limit")
    out += _uint(policy.weekly_limit, 32, "weekly_limit")
    out += _uint(policy.created_at, 8, "created_at")
    out += _uint(policy.expires_at or 0, 8, "expires_at")
    return bytes(out)


def decode_agent_policy(data: Union[bytes, str]) -> AgentPolicy:
    reader = _Reader(_as_bytes(data), "agent policy")
    reader.version()
    flags = reader.uint(1)
    if flags & ~_KNOWN_FLAGS:
        raise DecodeError(f"Unknown agent policy flags: {flags:#04x}")

    n = reader.count(2, 20)
    targets = frozenset("0x" + reader.take(20).hex() for _ in range(n))
    n = reader.count(2, 4)
    selectors = frozenset("0x" + reader.take(4).hex() for _ in range(n))

    max_amount_per_tx = reader.uint(32)
    daily_limit = reader.uint(32)
    weekly_limit = reader.uint(32)
    created_at = reader.uint(8)
    expires_raw = reader.uint(8)
    reader.finish()

    return AgentPolicy(
        allowed_targets=targets,
        allowed_selectors=selectors,
        max_amount_per_tx=max_amount_per_tx,
        daily_limit=daily_limit,
        weekly_limit=weekly_limit,
        created_at=created_at,
        expires_at=expires_raw if flags & FLAG_HAS_EXPIRY else None,
        unrestricted=bool(flags & FLAG_UNRESTRICTED),
    )


# X402Budget


def encode_x402_budget(budget: X402Budget) -> bytes:
    out = bytearray([CODEC_VERSION])
    out += _uint(budget.max_per_request, 32, "max_per_request")
    out += _uint(budget.daily_budget, 32, "daily_budget")
    out += _uint(budget.total_budget, 32, "total_budget")
    domains = sorted(budget.allowed_domains)
    out += _count(len(domains), 2, "allowed_domains")
    for domain in domains:
        out += _text(domain, "allowed_domains")
    assets = sorted(budget.allowed_assets)
    for asset in assets:
        if not is_address(asset):
            raise _encode_error("allowed_assets", f"{asset} is not a 20-byte address")
    out += _count(len(assets), 2, "allowed_assets")
    for asset in assets:
        out += bytes.fromhex(asset[2:])
    return bytes(out)


def decode_x402_budget(data: Union[bytes, str]) -> X402Budget:
    reader = _Reader(_as_bytes(data), "x402 budget")
    reader.version()
    max_per_request = reader.uint(32)
    daily_budget = reader.uint(32)
    total_budget = reader.uint(32)
    n = reader.count(2, 2)
    domains = frozenset(reader.text() for _ in range(n))
    n = reader.count(2, 20)
    assets = frozenset("0x" + reader.take(20).hex() for _ in range(n))
    reader.finish()
    return X402Budget(
        max_per_request=max_per_request,
        daily_budget=daily_budget,
        total_budget=total_budget,
        allowed_domains=domains,
        allowed_assets=assets,
    )


# BudgetState


def encode_budget_state(state: BudgetState) -> bytes:
    out = bytearray([CODEC_VERSION])
    out += _uint(state.spent_today, 32, "spent_today")
    out += _uint(state.spent_total, 32, "spent_total")
    out += _uint(state.window_start, 8, "window_start")
    out += _count(len(state.records), 4, "records")
    for record in state.records:
        out += _uint(record.amount, 32, "records.amount")
        out += _uint(record.timestamp, 8, "records.timestamp")
        out += _text(record.resource, "records.resource")
    return bytes(out)


def decode_budget_state(data: Union[bytes, str]) -> BudgetState:
    reader = _Reader(_as_bytes(data), "budget state")
    reader.version()
    spent_today = reader.uint(32)
    spent_total = reader.uint(32)
    window_start = reader.uint(8)
    n = reader.count(4, 42)
    records = []
    for _ in range(n):
        amount = reader.uint(32)
        timestamp = reader.uint(8)
        resource = reader.text()
        records.append(PaymentRecord(amount=amount, resource=resource, timestamp=timestamp))
    reader.finish()
    return BudgetState(
        spent_today=spent_today,
        spent_total=spent_total,
        window_start=window_start,
        records=tuple(records),
    )
