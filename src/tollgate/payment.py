"""
x402 payment authorization.

Flow for ``authorize_payment``:
1. Refuse an expired session key before anything else
2. Check the requirement against the active network and scheme
3. Refuse tokens outside the budget's asset allowlist (the network's USDC
   when the allowlist is empty)
4. Enforce the agent's on-chain policy (optional)
5. Atomically check and reserve budget on the ledger
6. Have the signer sign the EIP-712 and EIP-191 digests

Any failure after step 5 releases the reservation, so a rejected or failed
attempt never leaves a debit behind and never yields a partially signed
header.

Header wire format (``:`` delimited, seven segments)::

    version:scheme:network:payload:resource:amount:signature

``network`` and ``resource`` are percent-encoded, ``payload`` is unpadded
base64url JSON of the signed authorization, and ``signature`` is an EIP-191
signature by the payer over the first six segments.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote, unquote, urlparse

from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError as EthValidationError
from eth_utils import keccak, to_checksum_address

from .budget import BudgetLedger, PaymentRecord
from .config import PaymentConfig, network_to_chain_id, normalize_network
from .errors import (
    AssetNotAllowedError,
    MalformedPayloadError,
    NothingToRollbackError,
    PolicyViolationError,
    SessionKeyExpiredError,
    SigningError,
    UnsupportedSchemeError,
    ValidationError,
)
from .policy import (
    MAX_UINT256,
    AgentPolicy,
    PolicyIssue,
    X402Budget,
    check_agent_call,
    normalize_hex,
)
from .session import SessionKey, is_session_key_expired
from .signing import (
    SIGNATURE_LENGTH,
    Signer,
    message_digest,
    recover_message_signer,
    recover_typed_data_signer,
    typed_data_digest,
)

logger = logging.getLogger(__name__)


HEADER_VERSION = 1
SUPPORTED_SCHEMES = frozenset({"exact"})
HEADER_DELIMITER = ":"
HEADER_SEGMENTS = 7

TRANSFER_WITH_AUTHORIZATION_SIGNATURE = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)
TRANSFER_WITH_AUTHORIZATION_SELECTOR = "0x" + keccak(text=TRANSFER_WITH_AUTHORIZATION_SIGNATURE)[:4].hex()

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_NONCE_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130}$")
# uint256 never needs more than 78 decimal digits
_UINT_RE = re.compile(r"^[0-9]{1,78}$")


@dataclass(frozen=True)
class PaymentRequirement:
    """What a paying service asks for in its 402 response."""

    scheme: str
    network: str
    max_amount_required: int
    resource: str
    pay_to: str
    asset: Optional[str] = None
    description: str = ""
    max_timeout_seconds: int = 60
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        return resource_domain(self.resource)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentRequirement":
        """Parse the camelCase wire shape. Raises ValidationError."""
        if not isinstance(data, Mapping):
            raise ValidationError("Payment requirement must be a JSON object")

        issues: list[PolicyIssue] = []

        def text(key: str, required: bool = True) -> Optional[str]:
            value = data.get(key)
            if value is None:
                if required:
                    issues.append(PolicyIssue(key, "is required"))
                return None
            if not isinstance(value, str) or not value.strip():
                issues.append(PolicyIssue(key, "must be a non-empty string"))
                return None
            return value.strip()

        def uint(value: Any, key: str) -> Optional[int]:
            if isinstance(value, bool):
                issues.append(PolicyIssue(key, "must be an integer"))
                return None
            if isinstance(value, int):
                parsed = value
            elif isinstance(value, str) and _UINT_RE.match(value.strip()):
                parsed = int(value.strip())
            else:
                issues.append(PolicyIssue(key, "must be an integer"))
                return None
            if parsed < 0:
                issues.append(PolicyIssue(key, "must be non-negative"))
                return None
            if parsed > MAX_UINT256:
                issues.append(PolicyIssue(key, "must fit in uint256"))
                return None
            return parsed

        scheme = text("scheme")
        network = text("network")
        resource = text("resource")
        pay_to = text("payTo")
        asset = text("asset", required=False)
        description = data.get("description") or ""

        raw_amount = data.get("maxAmountRequired", data.get("amount"))
        amount = None
        if raw_amount is None:
            issues.append(PolicyIssue("maxAmountRequired", "is required"))
        else:
            amount = uint(raw_amount, "maxAmountRequired")

        timeout = uint(data.get("maxTimeoutSeconds", 60), "maxTimeoutSeconds")

        if network is not None:
            try:
                network = normalize_network(network)
            except ValueError as e:
                issues.append(PolicyIssue("network", str(e)))
        if pay_to is not None and not _ADDRESS_RE.match(pay_to):
            issues.append(PolicyIssue("payTo", "must be a 20-byte hex address"))
        if asset is not None and not _ADDRESS_RE.match(asset):
            issues.append(PolicyIssue("asset", "must be a 20-byte hex address"))

        extra = data.get("extra") or {}
        if not isinstance(extra, Mapping):
            issues.append(PolicyIssue("extra", "must be an object"))

        if issues:
            summary = "; ".join(str(issue) for issue in issues)
            raise ValidationError(f"Invalid payment requirement: {summary}", issues)

        return cls(
            scheme=scheme,
            network=network,
            max_amount_required=amount,
            resource=resource,
            pay_to=pay_to,
            asset=asset,
            description=str(description),
            max_timeout_seconds=timeout,
            extra=dict(extra),
        )

    def to_dict(self) -> dict:
        data = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": str(self.max_amount_required),
            "resource": self.resource,
            "payTo": self.pay_to,
            "description": self.description,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "extra": dict(self.extra),
        }
        if self.asset is not None:
            data["asset"] = self.asset
        return data


@dataclass(frozen=True)
class TransferAuthorization:
    """EIP-3009 transferWithAuthorization arguments."""

    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str

    def to_message(self) -> dict:
        """Typed-data message for EIP-712 hashing."""
        return {
            "from": to_checksum_address(self.from_address),
            "to": to_checksum_address(self.to),
            "value": self.value,
            "validAfter": self.valid_after,
            "validBefore": self.valid_before,
            "nonce": self.nonce,
        }

    def to_dict(self) -> dict:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


@dataclass(frozen=True)
class PaymentPayload:
    """Signed transfer authorization carried inside the header."""

    authorization: TransferAuthorization
    signature: str

    def to_dict(self) -> dict:
        return {"authorization": self.authorization.to_dict(), "signature": self.signature}


@dataclass(frozen=True)
class PaymentHeader:
    """The wire artifact attached to a paid request."""

    version: int
    scheme: str
    network: str
    payload: PaymentPayload
    resource: str
    amount: int
    signature: str

    def signing_input(self) -> str:
        """The first six segments, which the outer signature covers."""
        return _signing_input(
            self.version, self.scheme, self.network, self.payload, self.resource, self.amount
        )

    def encode(self) -> str:
        return self.signing_input() + HEADER_DELIMITER + self.signature

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": self.payload.to_dict(),
            "resource": self.resource,
            "amount": str(self.amount),
            "signature": self.signature,
        }


@dataclass(frozen=True)
class AuthorizedPayment:
    """A signed header plus the ledger debit it is backed by."""

    header: PaymentHeader
    record: PaymentRecord

    def encode(self) -> str:
        return self.header.encode()


def resource_domain(resource: str) -> str:
    """Hostname a resource URL is served from, lower-cased, without port."""
    parsed = urlparse(resource if "://" in resource else f"//{resource}")
    if not parsed.hostname:
        raise ValidationError(
            f"Resource has no host: {resource!r}", [PolicyIssue("resource", "has no host")]
        )
    return parsed.hostname.lower()


def generate_nonce(random_bytes: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """Random 32-byte authorization nonce as ``0x`` + 64 hex chars."""
    raw = random_bytes(32)
    if len(raw) != 32:
        raise ValueError(f"Nonce source returned {len(raw)} bytes, expected 32")
    return "0x" + raw.hex()


def transfer_typed_data(
    authorization: TransferAuthorization,
    asset: str,
    chain_id: int,
    token_name: str,
    token_version: str,
) -> dict:
    """EIP-712 payload for an EIP-3009 transfer authorization."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": token_name,
            "version": token_version,
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(asset),
        },
        "message": authorization.to_message(),
    }


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _encode_payload(payload: PaymentPayload) -> str:
    raw = json.dumps(payload.to_dict(), sort_keys=True, separators=(",", ":"))
    return _b64url_encode(raw.encode("utf-8"))


def _signing_input(
    version: int,
    scheme: str,
    network: str,
    payload: PaymentPayload,
    resource: str,
    amount: int,
) -> str:
    return HEADER_DELIMITER.join(
        [
            str(version),
            scheme,
            quote(network, safe=""),
            _encode_payload(payload),
            quote(resource, safe=""),
            str(amount),
        ]
    )


def encode_payment_header(header: PaymentHeader) -> str:
    return header.encode()


def _token_domain(requirement: PaymentRequirement, config: PaymentConfig) -> tuple[str, str]:
    extra = requirement.extra or {}
    name = extra.get("name") or config.token_name
    version = extra.get("version") or config.token_version
    return str(name), str(version)


def _resolve_asset(requirement: PaymentRequirement, config: PaymentConfig) -> str:
    asset = requirement.asset or config.default_asset
    if asset is None:
        raise ValidationError(
            f"No asset in requirement and no default asset for {config.network}",
            [PolicyIssue("asset", "is required")],
        )
    return asset


def _check_asset(asset: str, budget: X402Budget, config: PaymentConfig) -> None:
    # Without an explicit allowlist only the network's USDC is paid.
    if budget.allowed_assets:
        allowed = budget.allows_asset(asset)
    else:
        default = config.default_asset
        allowed = default is not None and normalize_hex(asset) == normalize_hex(default)
    if not allowed:
        logger.warning("Rejected payment in %s: asset not allowed", asset)
        raise AssetNotAllowedError(asset)


def _sign(signer: Signer, digest: bytes) -> bytes:
    signature = bytes(signer.sign_digest(digest))
    if len(signature) != SIGNATURE_LENGTH:
        raise SigningError(
            f"Signer returned {len(signature)} bytes, expected {SIGNATURE_LENGTH}"
        )
    return signature


def authorize_payment(
    requirement: PaymentRequirement,
    ledger: BudgetLedger,
    session_key: SessionKey,
    now: int,
    *,
    config: PaymentConfig,
    policy: Optional[AgentPolicy] = None,
    signer: Optional[Signer] = None,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> AuthorizedPayment:
    """Check policy and budget, then sign a payment header for ``requirement``."""
    if is_session_key_expired(session_key, now):
        raise SessionKeyExpiredError(
            f"Session key {session_key.address} expired at {session_key.expires_at}"
        )

    signer = signer if signer is not None else session_key.signer()
    if signer.address.lower() != session_key.address.lower():
        raise SigningError(
            f"Signer {signer.address} does not match session key {session_key.address}"
        )

    if requirement.scheme not in SUPPORTED_SCHEMES:
        raise PolicyViolationError(f"Unsupported payment scheme: {requirement.scheme}")
    if normalize_network(requirement.network) != config.network:
        raise PolicyViolationError(
            f"Requirement network {requirement.network} does not match active network {config.network}"
        )
    amount = requirement.max_amount_required
    if amount <= 0:
        raise ValidationError(
            f"Payment amount must be positive, got {amount}",
            [PolicyIssue("maxAmountRequired", "must be positive")],
        )
    if requirement.max_timeout_seconds <= 0:
        raise ValidationError(
            "maxTimeoutSeconds must be positive",
            [PolicyIssue("maxTimeoutSeconds", "must be positive")],
        )
    asset = _resolve_asset(requirement, config)
    domain = requirement.domain
    _check_asset(asset, ledger.budget, config)

    if policy is not None:
        check_agent_call(policy, asset, TRANSFER_WITH_AUTHORIZATION_SELECTOR, amount, now)

    state = ledger.check_and_reserve(
        amount, domain, now, resource=requirement.resource, asset=asset
    )
    record = state.records[-1]

    try:
        authorization = TransferAuthorization(
            from_address=session_key.address,
            to=requirement.pay_to,
            value=amount,
            valid_after=max(0, now - config.clock_skew_seconds),
            valid_before=now + min(requirement.max_timeout_seconds, config.max_validity_seconds),
            nonce=generate_nonce(random_bytes),
        )
        token_name, token_version = _token_domain(requirement, config)
        typed = transfer_typed_data(
            authorization, asset, config.chain_id, token_name, token_version
        )
        inner = _sign(
            signer,
            typed_data_digest(
                typed["domain"], typed["types"], typed["primaryType"], typed["message"]
            ),
        )
        payload = PaymentPayload(authorization=authorization, signature="0x" + inner.hex())
        signing_input = _signing_input(
            HEADER_VERSION, requirement.scheme, config.network, payload, requirement.resource, amount
        )
        outer = _sign(signer, message_digest(signing_input))
        header = PaymentHeader(
            version=HEADER_VERSION,
            scheme=requirement.scheme,
            network=config.network,
            payload=payload,
            resource=requirement.resource,
            amount=amount,
            signature="0x" + outer.hex(),
        )
    except Exception:
        try:
            ledger.release(record)
        except NothingToRollbackError:
            logger.error("Reservation for %s was already gone", requirement.resource)
        else:
            logger.warning("Signing failed for %s; reservation released", requirement.resource)
        raise

    logger.info(
        "Authorized payment of %d to %s for %s (nonce %s)",
        amount,
        requirement.pay_to,
        requirement.resource,
        authorization.nonce,
    )
    return AuthorizedPayment(header=header, record=record)


def build_payment_header(
    requirement: PaymentRequirement,
    ledger: BudgetLedger,
    session_key: SessionKey,
    now: int,
    *,
    config: PaymentConfig,
    policy: Optional[AgentPolicy] = None,
    signer: Optional[Signer] = None,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> PaymentHeader:
    return authorize_payment(
        requirement,
        ledger,
        session_key,
        now,
        config=config,
        policy=policy,
        signer=signer,
        random_bytes=random_bytes,
    ).header


# Parsing


def _require(mapping: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in mapping:
        raise MalformedPayloadError(f"Missing {where} field: {key}")
    return mapping[key]


def _parse_uint_str(value: Any, what: str) -> int:
    if not isinstance(value, str) or not _UINT_RE.match(value):
        raise MalformedPayloadError(f"{what} must be a decimal uint256 string")
    parsed = int(value)
    if parsed > MAX_UINT256:
        raise MalformedPayloadError(f"{what} does not fit in uint256")
    return parsed


def _parse_hex(value: Any, pattern: re.Pattern, what: str) -> str:
    if not isinstance(value, str) or not pattern.match(value):
        raise MalformedPayloadError(f"{what} is not valid hex")
    return value


def _parse_payload(segment: str) -> PaymentPayload:
    try:
        raw = _b64url_decode(segment)
    except (binascii.Error, ValueError) as e:
        raise MalformedPayloadError(f"Payload is not valid base64url: {e}") from e
    try:
        doc = json.loads(raw.decode("utf-8"))
    except ValueError as e:
        raise MalformedPayloadError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise MalformedPayloadError("Payload must be a JSON object")

    auth = _require(doc, "authorization", "payload")
    if not isinstance(auth, dict):
        raise MalformedPayloadError("Payload authorization must be a JSON object")
    authorization = TransferAuthorization(
        from_address=_parse_hex(_require(auth, "from", "authorization"), _ADDRESS_RE, "from"),
        to=_parse_hex(_require(auth, "to", "authorization"), _ADDRESS_RE, "to"),
        value=_parse_uint_str(_require(auth, "value", "authorization"), "value"),
        valid_after=_parse_uint_str(_require(auth, "validAfter", "authorization"), "validAfter"),
        valid_before=_parse_uint_str(_require(auth, "validBefore", "authorization"), "validBefore"),
        nonce=_parse_hex(_require(auth, "nonce", "authorization"), _NONCE_RE, "nonce"),
    )
    signature = _parse_hex(_require(doc, "signature", "payload"), _SIGNATURE_RE, "payload signature")
    return PaymentPayload(authorization=authorization, signature=signature)


def parse_payment_header(raw: str) -> PaymentHeader:
    """Strictly parse an encoded payment header. Every segment is required."""
    if not isinstance(raw, str):
        raise MalformedPayloadError("Payment header must be a string")
    segments = raw.strip().split(HEADER_DELIMITER)
    if len(segments) != HEADER_SEGMENTS:
        raise MalformedPayloadError(
            f"Payment header has {len(segments)} segments, expected {HEADER_SEGMENTS}"
        )
    if any(not segment for segment in segments):
        raise MalformedPayloadError("Payment header has an empty segment")

    version_s, scheme, network_s, payload_s, resource_s, amount_s, signature_s = segments

    if not _UINT_RE.match(version_s):
        raise MalformedPayloadError(f"Header version is not an integer: {version_s[:20]!r}")
    version = int(version_s)
    if version != HEADER_VERSION:
        raise UnsupportedSchemeError(f"Unsupported payment header version: {version}")
    if scheme not in SUPPORTED_SCHEMES:
        raise UnsupportedSchemeError(f"Unsupported payment scheme: {scheme}")

    try:
        network = normalize_network(unquote(network_s))
    except ValueError as e:
        raise MalformedPayloadError(str(e)) from e
    payload = _parse_payload(payload_s)
    resource = unquote(resource_s)
    amount = _parse_uint_str(amount_s, "Header amount")
    signature = _parse_hex(signature_s, _SIGNATURE_RE, "header signature")

    header = PaymentHeader(
        version=version,
        scheme=scheme,
        network=network,
        payload=payload,
        resource=resource,
        amount=amount,
        signature=signature,
    )
    # The outer signature covers the exact segment bytes.
    if header.encode() != raw.strip():
        raise MalformedPayloadError("Payment header is not canonically encoded")
    return header


def verify_payment_header(
    header: PaymentHeader,
    requirement: PaymentRequirement,
    now: int,
    *,
    config: PaymentConfig,
) -> tuple[bool, str]:
    """Check a parsed header against what the service asked for.

    Nonce replay tracking is the caller's job.
    """
    auth = header.payload.authorization
    if header.version != HEADER_VERSION:
        return False, f"Unsupported header version {header.version}"
    if header.scheme != requirement.scheme:
        return False, f"Scheme mismatch: {header.scheme} != {requirement.scheme}"
    if header.network != normalize_network(requirement.network):
        return False, f"Network mismatch: {header.network} != {requirement.network}"
    if header.resource != requirement.resource:
        return False, f"Resource mismatch: {header.resource} != {requirement.resource}"
    if auth.value != header.amount:
        return False, f"Authorized value {auth.value} does not match header amount {header.amount}"
    if header.amount < requirement.max_amount_required:
        return False, (
            f"Amount {header.amount} is less than required {requirement.max_amount_required}"
        )
    if auth.to.lower() != requirement.pay_to.lower():
        return False, f"Payee mismatch: {auth.to} != {requirement.pay_to}"
    if now < auth.valid_after:
        return False, f"Authorization not valid until {auth.valid_after}"
    if now >= auth.valid_before:
        return False, f"Authorization expired at {auth.valid_before}"

    # eth-account asserts on any v other than 27 or 28
    for what, signature in (("Authorization", header.payload.signature), ("Header", header.signature)):
        if int(signature[-2:], 16) not in (27, 28):
            return False, f"{what} signature has an invalid recovery id"

    try:
        asset = _resolve_asset(requirement, config)
        token_name, token_version = _token_domain(requirement, config)
        typed = transfer_typed_data(
            auth, asset, network_to_chain_id(header.network), token_name, token_version
        )
        inner_signer = recover_typed_data_signer(
            typed["domain"],
            typed["types"],
            typed["primaryType"],
            typed["message"],
            bytes.fromhex(header.payload.signature[2:]),
        )
        outer_signer = recover_message_signer(
            header.signing_input(), bytes.fromhex(header.signature[2:])
        )
    except (ValueError, TypeError, EthValidationError, BadSignature) as e:
        return False, f"Signature verification failed: {e}"

    if inner_signer.lower() != auth.from_address.lower():
        return False, f"Authorization signer mismatch: expected {auth.from_address}, got {inner_signer}"
    if outer_signer.lower() != auth.from_address.lower():
        return False, f"Header signer mismatch: expected {auth.from_address}, got {outer_signer}"
    return True, "Valid payment header"
