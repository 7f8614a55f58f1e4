"""Tests for payment authorization, header encoding and verification."""

import base64
import dataclasses
import json

import pytest
from eth_account import Account

from tollgate.budget import BudgetLedger
from tollgate.config import PaymentConfig, USDC_ADDRESSES
from tollgate.errors import (
    AssetNotAllowedError,
    DailyBudgetExceededError,
    DomainNotAllowedError,
    MalformedPayloadError,
    PolicyViolationError,
    SessionKeyExpiredError,
    SigningError,
    UnsupportedSchemeError,
    ValidationError,
)
from tollgate.payment import (
    TRANSFER_WITH_AUTHORIZATION_SELECTOR,
    PaymentRequirement,
    authorize_payment,
    build_payment_header,
    encode_payment_header,
    generate_nonce,
    parse_payment_header,
    resource_domain,
    transfer_typed_data,
    verify_payment_header,
)
from tollgate.policy import MAX_UINT256, create_agent_policy, create_x402_policy
from tollgate.session import generate_session_key
from tollgate.signing import message_digest, recover_typed_data_signer, typed_data_digest


NOW = 1_700_000_000
PAY_TO = "0x" + "22" * 20
RESOURCE = "https://api.example.com/data?q=1"
USDC = USDC_ADDRESSES[84532]
OTHER_TOKEN = "0x" + "55" * 20


def make_requirement(**kwargs):
    defaults = dict(
        scheme="exact",
        network="eip155:84532",
        max_amount_required=1_000,
        resource=RESOURCE,
        pay_to=PAY_TO,
        asset=USDC,
    )
    defaults.update(kwargs)
    return PaymentRequirement(**defaults)


def make_ledger(
    domains=("api.example.com",), max_per_request=5_000, daily=10_000, total=100_000, assets=()
):
    budget = create_x402_policy(
        max_per_request=max_per_request,
        daily_budget=daily,
        total_budget=total,
        allowed_domains=domains,
        allowed_assets=assets,
    )
    return BudgetLedger(budget, window_start=NOW)



def _b64url_json(doc):
    raw = json.dumps(doc, sort_keys=True, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")

@pytest.fixture
def config():
    return PaymentConfig()


@pytest.fixture
def session_key():
    return generate_session_key(3600, NOW)


@pytest.fixture
def authorized(config, session_key):
    return authorize_payment(make_requirement(), make_ledger(), session_key, NOW, config=config)


class FailingSigner:
    def __init__(self, address):
        self.address = address

    def sign_digest(self, digest):
        raise SigningError("hardware wallet unplugged")


class DigestSigner:
    """Remote-style signer: sees only 32-byte digests, never typed data."""

    def __init__(self, session_key):
        self.address = session_key.address
        self._key = session_key.private_key
        self.digests = []

    def sign_digest(self, digest):
        self.digests.append(digest)
        return bytes(Account.unsafe_sign_hash(digest, self._key).signature)


class ShortSigner(DigestSigner):
    def sign_digest(self, digest):
        return super().sign_digest(digest)[:64]


class LedgerClearingSigner(FailingSigner):
    """Fails after something else already undid the reservation."""

    def __init__(self, address, ledger):
        super().__init__(address)
        self.ledger = ledger

    def sign_digest(self, digest):
        self.ledger.rollback_last_record()
        super().sign_digest(digest)


class TestPaymentRequirement:
    def test_from_dict_camel_case(self):
        req = PaymentRequirement.from_dict(
            {
                "scheme": "exact",
                "network": "base-sepolia",
                "maxAmountRequired": "10000",
                "resource": RESOURCE,
                "payTo": PAY_TO,
                "asset": USDC,
                "maxTimeoutSeconds": 30,
                "extra": {"name": "USDC", "version": "2"},
            }
        )
        assert req.network == "eip155:84532"
        assert req.max_amount_required == 10_000
        assert req.max_timeout_seconds == 30
        assert req.domain == "api.example.com"
        assert PaymentRequirement.from_dict(req.to_dict()) == req

    def test_amount_alias(self):
        req = PaymentRequirement.from_dict(
            {"scheme": "exact", "network": "eip155:84532", "amount": 5, "resource": RESOURCE, "payTo": PAY_TO}
        )
        assert req.max_amount_required == 5
        assert req.asset is None

    def test_collects_all_issues(self):
        with pytest.raises(ValidationError) as exc:
            PaymentRequirement.from_dict(
                {"scheme": "exact", "network": "mars", "maxAmountRequired": "-1", "payTo": "0x12"}
            )
        fields = [issue.field for issue in exc.value.issues]
        assert fields == ["resource", "maxAmountRequired", "network", "payTo"]

    def test_oversized_amount(self):
        base = {"scheme": "exact", "network": "eip155:84532", "resource": RESOURCE, "payTo": PAY_TO}
        with pytest.raises(ValidationError) as exc:
            PaymentRequirement.from_dict({**base, "maxAmountRequired": "9" * 5000})
        assert [issue.field for issue in exc.value.issues] == ["maxAmountRequired"]

        with pytest.raises(ValidationError, match="uint256"):
            PaymentRequirement.from_dict({**base, "maxAmountRequired": MAX_UINT256 + 1})

    def test_resource_domain(self):
        assert resource_domain("https://API.example.com:8443/x") == "api.example.com"
        assert resource_domain("api.example.com/path") == "api.example.com"
        with pytest.raises(ValidationError):
            resource_domain("/just/a/path")


class TestAuthorizePayment:
    def test_debits_ledger_and_signs(self, config, session_key):
        ledger = make_ledger()
        authorized = authorize_payment(make_requirement(), ledger, session_key, NOW, config=config)
        header = authorized.header

        assert ledger.state.spent_total == 1_000
        assert authorized.record == ledger.state.records[-1]
        assert header.amount == 1_000
        assert header.network == "eip155:84532"
        auth = header.payload.authorization
        assert auth.from_address == session_key.address
        assert auth.valid_after == NOW - config.clock_skew_seconds
        assert auth.valid_before == NOW + 60
        assert auth.nonce.startswith("0x") and len(auth.nonce) == 66

    def test_inner_signature_is_eip3009(self, authorized, config, session_key):
        header = authorized.header
        typed = transfer_typed_data(header.payload.authorization, USDC, 84532, "USD Coin", "2")
        signer = recover_typed_data_signer(
            typed["domain"],
            typed["types"],
            typed["primaryType"],
            typed["message"],
            bytes.fromhex(header.payload.signature[2:]),
        )
        assert signer == session_key.address

    def test_validity_capped_by_config(self, session_key):
        config = PaymentConfig(max_validity_seconds=20)
        header = build_payment_header(
            make_requirement(max_timeout_seconds=300), make_ledger(), session_key, NOW, config=config
        )
        assert header.payload.authorization.valid_before == NOW + 20

    def test_expired_key_checked_first(self, config):
        key = generate_session_key(60, NOW - 120)
        ledger = make_ledger(domains=["somewhere.else"])
        with pytest.raises(SessionKeyExpiredError):
            authorize_payment(make_requirement(), ledger, key, NOW, config=config)
        assert ledger.state.records == ()

    def test_network_mismatch(self, config, session_key):
        ledger = make_ledger()
        with pytest.raises(PolicyViolationError, match="network"):
            authorize_payment(make_requirement(network="eip155:8453"), ledger, session_key, NOW, config=config)
        assert ledger.state.spent_total == 0

    def test_legacy_network_name_accepted(self, config, session_key):
        header = build_payment_header(
            make_requirement(network="base-sepolia"), make_ledger(), session_key, NOW, config=config
        )
        assert header.network == "eip155:84532"

    def test_unsupported_scheme(self, config, session_key):
        with pytest.raises(PolicyViolationError, match="scheme"):
            authorize_payment(make_requirement(scheme="upto"), make_ledger(), session_key, NOW, config=config)

    def test_zero_amount(self, config, session_key):
        with pytest.raises(ValidationError):
            authorize_payment(
                make_requirement(max_amount_required=0), make_ledger(), session_key, NOW, config=config
            )

    def test_default_asset_used(self, config, session_key):
        header = build_payment_header(
            make_requirement(asset=None), make_ledger(), session_key, NOW, config=config
        )
        ok, reason = verify_payment_header(header, make_requirement(asset=None), NOW, config=config)
        assert ok, reason

    def test_no_asset_on_unknown_chain(self, session_key):
        config = PaymentConfig(network="eip155:999")
        with pytest.raises(ValidationError, match="asset"):
            authorize_payment(
                make_requirement(asset=None, network="eip155:999"),
                make_ledger(),
                session_key,
                NOW,
                config=config,
            )

    def test_budget_rejections_propagate(self, config, session_key):
        with pytest.raises(DomainNotAllowedError):
            authorize_payment(make_requirement(), make_ledger(domains=["other.com"]), session_key, NOW, config=config)

        ledger = make_ledger(max_per_request=1_000, daily=1_500)
        authorize_payment(make_requirement(), ledger, session_key, NOW, config=config)
        with pytest.raises(DailyBudgetExceededError):
            authorize_payment(make_requirement(), ledger, session_key, NOW + 1, config=config)
        assert ledger.state.spent_total == 1_000

    def test_agent_policy_enforced(self, config, session_key):
        policy = create_agent_policy(
            allowed_targets=[USDC],
            allowed_selectors=[TRANSFER_WITH_AUTHORIZATION_SELECTOR],
            max_amount_per_tx=500,
            daily_limit=10_000,
            weekly_limit=50_000,
            created_at=NOW - 10,
        )
        ledger = make_ledger()
        with pytest.raises(PolicyViolationError, match="per-transaction"):
            authorize_payment(make_requirement(), ledger, session_key, NOW, config=config, policy=policy)
        assert ledger.state.spent_total == 0

        header = build_payment_header(
            make_requirement(max_amount_required=500), ledger, session_key, NOW, config=config, policy=policy
        )
        assert header.amount == 500

    def test_signing_failure_releases_reservation(self, config, session_key):
        ledger = make_ledger()
        with pytest.raises(SigningError):
            authorize_payment(
                make_requirement(),
                ledger,
                session_key,
                NOW,
                config=config,
                signer=FailingSigner(session_key.address),
            )
        assert ledger.state.spent_total == 0
        assert ledger.state.records == ()

    def test_signer_must_match_session_key(self, config, session_key):
        ledger = make_ledger()
        with pytest.raises(SigningError, match="does not match"):
            authorize_payment(
                make_requirement(), ledger, session_key, NOW, config=config, signer=FailingSigner(PAY_TO)
            )
        assert ledger.state.spent_total == 0

    def test_digest_only_signer(self, config, session_key):
        signer = DigestSigner(session_key)
        header = build_payment_header(
            make_requirement(), make_ledger(), session_key, NOW, config=config, signer=signer
        )
        ok, reason = verify_payment_header(header, make_requirement(), NOW, config=config)
        assert ok, reason

        typed = transfer_typed_data(
            header.payload.authorization, USDC, 84532, config.token_name, config.token_version
        )
        assert signer.digests == [
            typed_data_digest(typed["domain"], typed["types"], typed["primaryType"], typed["message"]),
            message_digest(header.signing_input()),
        ]

    def test_short_signature_releases_reservation(self, config, session_key):
        ledger = make_ledger()
        with pytest.raises(SigningError, match="64 bytes"):
            authorize_payment(
                make_requirement(), ledger, session_key, NOW, config=config, signer=ShortSigner(session_key)
            )
        assert ledger.state.records == ()

    def test_signing_error_survives_missing_reservation(self, config, session_key):
        ledger = make_ledger()
        signer = LedgerClearingSigner(session_key.address, ledger)
        with pytest.raises(SigningError, match="unplugged"):
            authorize_payment(make_requirement(), ledger, session_key, NOW, config=config, signer=signer)
        assert ledger.state.records == ()

    def test_asset_outside_allowlist(self, config, session_key):
        ledger = make_ledger(assets=[USDC])
        with pytest.raises(AssetNotAllowedError):
            authorize_payment(
                make_requirement(asset=OTHER_TOKEN), ledger, session_key, NOW, config=config
            )
        assert ledger.state.spent_total == 0

    def test_listed_asset_is_paid(self, config, session_key):
        requirement = make_requirement(asset=OTHER_TOKEN)
        header = build_payment_header(
            requirement, make_ledger(assets=[OTHER_TOKEN]), session_key, NOW, config=config
        )
        ok, reason = verify_payment_header(header, requirement, NOW, config=config)
        assert ok, reason

    def test_empty_allowlist_only_pays_network_usdc(self, config, session_key):
        ledger = make_ledger()
        with pytest.raises(AssetNotAllowedError):
            authorize_payment(
                make_requirement(asset=OTHER_TOKEN), ledger, session_key, NOW, config=config
            )
        assert ledger.state.records == ()
        build_payment_header(
            make_requirement(asset=USDC.upper().replace("0X", "0x")), ledger, session_key, NOW, config=config
        )

    def test_deterministic_nonce_source(self, config, session_key):
        header = build_payment_header(
            make_requirement(),
            make_ledger(),
            session_key,
            NOW,
            config=config,
            random_bytes=lambda n: b"\x07" * n,
        )
        assert header.payload.authorization.nonce == "0x" + "07" * 32

    def test_generate_nonce_rejects_short_source(self):
        with pytest.raises(ValueError):
            generate_nonce(lambda n: b"\x00" * 8)


class TestHeaderEncoding:
    def test_round_trip(self, authorized):
        encoded = authorized.encode()
        assert encoded == encode_payment_header(authorized.header)
        assert len(encoded.split(":")) == 7
        assert parse_payment_header(encoded) == authorized.header

    def test_resource_with_delimiter_survives(self, config, session_key):
        resource = "https://api.example.com:8443/a:b"
        header = build_payment_header(
            make_requirement(resource=resource), make_ledger(), session_key, NOW, config=config
        )
        parsed = parse_payment_header(header.encode())
        assert parsed.resource == resource

    def test_missing_payload_segment(self, authorized):
        segments = authorized.encode().split(":")
        del segments[3]
        with pytest.raises(MalformedPayloadError, match="segments"):
            parse_payment_header(":".join(segments))

    def test_empty_segment(self, authorized):
        segments = authorized.encode().split(":")
        segments[3] = ""
        with pytest.raises(MalformedPayloadError, match="empty"):
            parse_payment_header(":".join(segments))

    def test_unsupported_version(self, authorized):
        segments = authorized.encode().split(":")
        segments[0] = "2"
        with pytest.raises(UnsupportedSchemeError, match="version"):
            parse_payment_header(":".join(segments))

    def test_unsupported_scheme(self, authorized):
        segments = authorized.encode().split(":")
        segments[1] = "upto"
        with pytest.raises(UnsupportedSchemeError, match="scheme"):
            parse_payment_header(":".join(segments))

    def test_garbage_payload(self, authorized):
        segments = authorized.encode().split(":")
        segments[3] = "bm90IGpzb24"
        with pytest.raises(MalformedPayloadError, match="JSON"):
            parse_payment_header(":".join(segments))

    def test_bad_amount(self, authorized):
        segments = authorized.encode().split(":")
        segments[5] = "-5"
        with pytest.raises(MalformedPayloadError, match="amount"):
            parse_payment_header(":".join(segments))

    def test_non_canonical_network(self, authorized):
        segments = authorized.encode().split(":")
        segments[2] = "base-sepolia"
        with pytest.raises(MalformedPayloadError, match="canonical"):
            parse_payment_header(":".join(segments))

    def test_oversized_amount_segment(self, authorized):
        segments = authorized.encode().split(":")
        segments[5] = "9" * 5000
        with pytest.raises(MalformedPayloadError, match="amount"):
            parse_payment_header(":".join(segments))

    def test_amount_above_uint256(self, authorized):
        segments = authorized.encode().split(":")
        segments[5] = str(MAX_UINT256 + 1)
        with pytest.raises(MalformedPayloadError, match="uint256"):
            parse_payment_header(":".join(segments))

    def test_oversized_version_segment(self, authorized):
        segments = authorized.encode().split(":")
        segments[0] = "9" * 5000
        with pytest.raises(MalformedPayloadError, match="version"):
            parse_payment_header(":".join(segments))

    def test_oversized_payload_value(self, authorized):
        doc = authorized.header.payload.to_dict()
        doc["authorization"]["value"] = "9" * 5000
        segments = authorized.encode().split(":")
        segments[3] = _b64url_json(doc)
        with pytest.raises(MalformedPayloadError, match="value"):
            parse_payment_header(":".join(segments))

    def test_oversized_payload_number(self, authorized):
        raw = json.dumps(authorized.header.payload.to_dict()).replace('"value": "1000"', '"value": ' + "9" * 5000)
        segments = authorized.encode().split(":")
        segments[3] = base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")
        with pytest.raises(MalformedPayloadError):
            parse_payment_header(":".join(segments))

    def test_not_a_header(self):
        with pytest.raises(MalformedPayloadError):
            parse_payment_header("hello")


class TestVerifyPaymentHeader:
    def test_valid(self, authorized, config):
        header = parse_payment_header(authorized.encode())
        ok, reason = verify_payment_header(header, make_requirement(), NOW + 5, config=config)
        assert ok, reason
        assert reason == "Valid payment header"

    def test_tampered_amount_segment(self, authorized, config):
        segments = authorized.encode().split(":")
        segments[5] = "999999"
        header = parse_payment_header(":".join(segments))
        ok, reason = verify_payment_header(header, make_requirement(), NOW, config=config)
        assert not ok
        assert "does not match header amount" in reason

    def test_tampered_resource_breaks_outer_signature(self, authorized, config):
        other = "https://api.example.com/other"
        header = dataclasses.replace(authorized.header, resource=other)
        ok, reason = verify_payment_header(
            header, make_requirement(resource=other), NOW, config=config
        )
        assert not ok

    def test_underpayment(self, authorized, config):
        ok, reason = verify_payment_header(
            authorized.header, make_requirement(max_amount_required=2_000), NOW, config=config
        )
        assert not ok
        assert "less than required" in reason

    def test_wrong_payee(self, authorized, config):
        ok, reason = verify_payment_header(
            authorized.header, make_requirement(pay_to="0x" + "33" * 20), NOW, config=config
        )
        assert not ok
        assert "Payee" in reason

    def test_resource_mismatch(self, authorized, config):
        ok, reason = verify_payment_header(
            authorized.header, make_requirement(resource="https://api.example.com/x"), NOW, config=config
        )
        assert not ok
        assert "Resource" in reason

    def test_validity_window(self, authorized, config):
        ok, reason = verify_payment_header(authorized.header, make_requirement(), NOW + 60, config=config)
        assert not ok and "expired" in reason
        ok, reason = verify_payment_header(authorized.header, make_requirement(), NOW - 31, config=config)
        assert not ok and "not valid until" in reason

    def test_bad_recovery_id(self, authorized, config):
        header = dataclasses.replace(authorized.header, signature=authorized.header.signature[:-2] + "05")
        ok, reason = verify_payment_header(header, make_requirement(), NOW, config=config)
        assert not ok
        assert "recovery id" in reason

    def test_unrecoverable_signature(self, authorized, config):
        header = dataclasses.replace(authorized.header, signature="0x" + "00" * 64 + "1b")
        ok, reason = verify_payment_header(header, make_requirement(), NOW, config=config)
        assert not ok
        assert "Signature verification failed" in reason

    def test_wrong_token_domain(self, authorized, config):
        requirement = make_requirement(extra={"name": "Other Token", "version": "9"})
        ok, reason = verify_payment_header(authorized.header, requirement, NOW, config=config)
        assert not ok
        assert "signer mismatch" in reason
