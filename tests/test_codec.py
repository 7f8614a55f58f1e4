"""Tests for the binary policy and ledger codecs."""

from dataclasses import replace

import pytest

from tollgate.budget import BudgetState, PaymentRecord
from tollgate.codec import (
    CODEC_VERSION,
    decode_agent_policy,
    decode_budget_state,
    decode_x402_budget,
    encode_agent_policy,
    encode_budget_state,
    encode_x402_budget,
    to_hex,
)
from tollgate.errors import DecodeError, ValidationError
from tollgate.policy import MAX_UINT256, create_agent_policy, create_x402_policy


USDC_BASE_SEPOLIA = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"

TARGETS = [
    "0x036cbd53842c5426634e7929541ec2318f3dcf7e",
    "0x1111111111111111111111111111111111111111",
]


def make_policy(**kwargs):
    defaults = dict(
        allowed_targets=TARGETS,
        allowed_selectors=["0xa9059cbb", "0x095ea7b3"],
        max_amount_per_tx=1_000_000,
        daily_limit=10_000_000,
        weekly_limit=MAX_UINT256,
        created_at=1_700_000_000,
        expires_at=1_700_086_400,
    )
    defaults.update(kwargs)
    return create_agent_policy(**defaults)


def make_budget():
    return create_x402_policy(
        max_per_request=1_000_000,
        daily_budget=10_000_000,
        total_budget=100_000_000,
        allowed_domains=["api.example.com", "data.example.org"],
    )


class TestAgentPolicyCodec:
    def test_round_trip(self):
        policy = make_policy()
        assert decode_agent_policy(encode_agent_policy(policy)) == policy

    def test_length_is_deterministic(self):
        encoded = encode_agent_policy(make_policy())
        # version, flags, two counts, 2 targets, 2 selectors, 3 u256, 2 u64
        assert len(encoded) == 1 + 1 + 2 + 40 + 2 + 8 + 96 + 16
        assert encoded[0] == CODEC_VERSION

    def test_set_order_does_not_change_bytes(self):
        a = make_policy(allowed_targets=TARGETS)
        b = make_policy(allowed_targets=list(reversed(TARGETS)))
        assert encode_agent_policy(a) == encode_agent_policy(b)

    def test_no_expiry_and_unrestricted_flags(self):
        policy = make_policy(expires_at=None, unrestricted=True, allowed_targets=[], allowed_selectors=[])
        decoded = decode_agent_policy(encode_agent_policy(policy))
        assert decoded.expires_at is None
        assert decoded.unrestricted is True
        assert decoded.allowed_targets == frozenset()

    def test_hex_input_accepted(self):
        policy = make_policy()
        encoded = to_hex(encode_agent_policy(policy))
        assert encoded.startswith("0x")
        assert decode_agent_policy(encoded) == policy
        assert decode_agent_policy(encoded[2:]) == policy

    def test_unencodable_values_rejected(self):
        with pytest.raises(ValidationError, match="max_amount_per_tx"):
            encode_agent_policy(make_policy(max_amount_per_tx=-1))
        with pytest.raises(ValidationError, match="allowed_targets"):
            encode_agent_policy(make_policy(allowed_targets=["0x1234"]))

    def test_truncated_input(self):
        encoded = encode_agent_policy(make_policy())
        with pytest.raises(DecodeError, match="Truncated"):
            decode_agent_policy(encoded[:-1])

    def test_trailing_bytes(self):
        encoded = encode_agent_policy(make_policy())
        with pytest.raises(DecodeError, match="Trailing"):
            decode_agent_policy(encoded + b"\x00")

    def test_unknown_version(self):
        encoded = bytearray(encode_agent_policy(make_policy()))
        encoded[0] = 0x02
        with pytest.raises(DecodeError, match="version"):
            decode_agent_policy(bytes(encoded))

    def test_unknown_flags(self):
        encoded = bytearray(encode_agent_policy(make_policy()))
        encoded[1] = 0x80
        with pytest.raises(DecodeError, match="flags"):
            decode_agent_policy(bytes(encoded))

    def test_length_prefix_past_end(self):
        encoded = bytearray(encode_agent_policy(make_policy()))
        encoded[2:4] = (0xFFFF).to_bytes(2, "big")
        with pytest.raises(DecodeError, match="Length prefix"):
            decode_agent_policy(bytes(encoded))

    def test_bad_hex(self):
        with pytest.raises(DecodeError, match="hex"):
            decode_agent_policy("0xnothex")

    def test_empty_input(self):
        with pytest.raises(DecodeError):
            decode_agent_policy(b"")


class TestX402BudgetCodec:
    def test_round_trip(self):
        budget = make_budget()
        assert decode_x402_budget(encode_x402_budget(budget)) == budget

    def test_invalid_utf8_domain(self):
        encoded = bytearray(encode_x402_budget(make_budget()))
        # first domain byte sits after version, three u256 and two length prefixes
        encoded[1 + 96 + 2 + 2] = 0xFF
        with pytest.raises(DecodeError, match="UTF-8"):
            decode_x402_budget(bytes(encoded))

    def test_truncated(self):
        with pytest.raises(DecodeError):
            decode_x402_budget(encode_x402_budget(make_budget())[:50])

    def test_round_trip_with_assets(self):
        budget = replace(make_budget(), allowed_assets=frozenset([USDC_BASE_SEPOLIA, TARGETS[1]]))
        encoded = encode_x402_budget(budget)
        assert encoded[-42:-40] == (2).to_bytes(2, "big")
        assert decode_x402_budget(encoded) == budget

    def test_empty_asset_list_is_two_zero_bytes(self):
        assert encode_x402_budget(make_budget())[-2:] == b"\x00\x00"

    def test_asset_count_past_end(self):
        encoded = bytearray(encode_x402_budget(make_budget()))
        encoded[-2:] = (3).to_bytes(2, "big")
        with pytest.raises(DecodeError, match="exceeds remaining"):
            decode_x402_budget(bytes(encoded))

    def test_bad_asset_is_not_encodable(self):
        budget = replace(make_budget(), allowed_assets=frozenset(["0x1234"]))
        with pytest.raises(ValidationError, match="allowed_assets"):
            encode_x402_budget(budget)


class TestBudgetStateCodec:
    def test_round_trip(self):
        state = BudgetState(
            spent_today=3_000_000,
            spent_total=9_000_000,
            window_start=1_700_000_000,
            records=(
                PaymentRecord(amount=1_000_000, resource="https://api.example.com/a", timestamp=1_700_000_010),
                PaymentRecord(amount=2_000_000, resource="https://api.example.com/ü", timestamp=1_700_000_020),
            ),
        )
        assert decode_budget_state(encode_budget_state(state)) == state

    def test_empty_state(self):
        state = BudgetState.initial(42)
        encoded = encode_budget_state(state)
        assert len(encoded) == 1 + 32 + 32 + 8 + 4
        assert decode_budget_state(encoded) == state

    def test_record_count_past_end(self):
        encoded = bytearray(encode_budget_state(BudgetState.initial(0)))
        encoded[-4:] = (5).to_bytes(4, "big")
        with pytest.raises(DecodeError, match="Length prefix"):
            decode_budget_state(bytes(encoded))
