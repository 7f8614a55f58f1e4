"""
Signing backends.

Payment code never touches raw key material; it asks a ``Signer`` for
signatures. ``LocalSigner`` wraps an eth-account ``LocalAccount`` for session
keys held in memory. A remote signer (KMS, hardware wallet) only has to
provide the same two members: an address and a way to sign a digest.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_utils import keccak

from .errors import SigningError

logger = logging.getLogger(__name__)

DIGEST_LENGTH = 32
SIGNATURE_LENGTH = 65


@runtime_checkable
class Signer(Protocol):
    """
    Anything that can sign a 32-byte digest with a secp256k1 key.

    ``sign_digest`` returns the 65-byte r || s || v signature, v being 27 or 28.
    Callers build the EIP-712 and EIP-191 digests themselves.
    """

    @property
    def address(self) -> str: ...

    def sign_digest(self, digest: bytes) -> bytes: ...


def build_domain_type(domain: dict[str, Any]) -> list[dict[str, str]]:
    """EIP712Domain field list for the keys present in ``domain``."""
    fields: list[dict[str, str]] = []
    if "name" in domain:
        fields.append({"name": "name", "type": "string"})
    if "version" in domain:
        fields.append({"name": "version", "type": "string"})
    if "chainId" in domain:
        fields.append({"name": "chainId", "type": "uint256"})
    if "verifyingContract" in domain:
        fields.append({"name": "verifyingContract", "type": "address"})
    if "salt" in domain:
        fields.append({"name": "salt", "type": "bytes32"})
    return fields


def full_typed_data(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
) -> dict[str, Any]:
    return {
        "types": {**types, "EIP712Domain": build_domain_type(domain)},
        "primaryType": primary_type,
        "domain": domain,
        "message": message,
    }


def _signable_typed_data(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
) -> SignableMessage:
    return encode_typed_data(full_message=full_typed_data(domain, types, primary_type, message))


def _digest(signable: SignableMessage) -> bytes:
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def typed_data_digest(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
) -> bytes:
    """EIP-712 digest (the 32 bytes that actually get signed)."""
    return _digest(_signable_typed_data(domain, types, primary_type, message))


def message_digest(text: str) -> bytes:
    """EIP-191 personal-message digest."""
    return _digest(encode_defunct(text=text))


def recover_typed_data_signer(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
    signature: bytes,
) -> str:
    signable = _signable_typed_data(domain, types, primary_type, message)
    return Account.recover_message(signable, signature=signature)


def recover_message_signer(text: str, signature: bytes) -> str:
    return Account.recover_message(encode_defunct(text=text), signature=signature)


class LocalSigner:
    """Signer backed by an in-memory eth-account key."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: bytes) -> "LocalSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_digest(self, digest: bytes) -> bytes:
        if len(digest) != DIGEST_LENGTH:
            raise SigningError(f"Digest must be {DIGEST_LENGTH} bytes, got {len(digest)}")
        try:
            signed = self._account.unsafe_sign_hash(digest)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Digest signing failed: {e}") from e
        logger.debug("Signed digest 0x%s with %s", digest.hex(), self.address)
        return bytes(signed.signature)

    def __repr__(self) -> str:
        return f"LocalSigner(address={self.address})"
