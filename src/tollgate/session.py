"""
Session keys: ephemeral signing credentials bound to one agent.

A session key is generated on demand, lives until ``expires_at`` and is never
renewed in place; callers generate a replacement. The private key is only
written out by an explicit ``serialize_session_key`` call, and it never shows
up in ``repr`` or logs.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from eth_account import Account
from eth_utils import to_checksum_address

from .errors import DecodeError, InvalidKeyMaterialError, SessionKeyExpiredError
from .signing import LocalSigner

logger = logging.getLogger(__name__)


SERIALIZATION_VERSION = 1
PRIVATE_KEY_LENGTH = 32
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass(frozen=True)
class SessionKey:
    """An agent's signing identity for a bounded period."""

    private_key: bytes = field(repr=False)
    address: str
    created_at: int
    expires_at: int

    def signer(self) -> LocalSigner:
        return LocalSigner.from_key(self.private_key)

    def to_public_dict(self, now: Optional[int] = None) -> dict:
        """Key metadata without key material."""
        info = {
            "address": self.address,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }
        if now is not None:
            info["active"] = is_session_key_active(self, now)
            info["seconds_remaining"] = get_session_key_remaining_time(self, now)
        return info


def _material_bytes(material: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(material, (bytes, bytearray)):
        return bytes(material)
    text = material.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise InvalidKeyMaterialError("Private key is not valid hex") from e


def _is_valid_scalar(raw: bytes) -> bool:
    return len(raw) == PRIVATE_KEY_LENGTH and 0 < int.from_bytes(raw, "big") < SECP256K1_ORDER


def session_key_from_private_material(
    material: Union[bytes, bytearray, str],
    created_at: int,
    expires_at: int,
) -> SessionKey:
    """Rebuild a session key from its 32-byte private scalar."""
    raw = _material_bytes(material)
    if len(raw) != PRIVATE_KEY_LENGTH:
        raise InvalidKeyMaterialError(
            f"Private key must be {PRIVATE_KEY_LENGTH} bytes, got {len(raw)}"
        )
    if not _is_valid_scalar(raw):
        raise InvalidKeyMaterialError("Private key is outside the secp256k1 curve order")
    account = Account.from_key(raw)
    return SessionKey(
        private_key=raw,
        address=account.address,
        created_at=created_at,
        expires_at=expires_at,
    )


def generate_session_key(
    expiry_duration: int,
    now: int,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> SessionKey:
    """Generate a fresh key valid from ``now`` for ``expiry_duration`` seconds."""
    if expiry_duration <= 0:
        raise ValueError(f"expiry_duration must be positive, got {expiry_duration}")
    raw = random_bytes(PRIVATE_KEY_LENGTH)
    while not _is_valid_scalar(raw):
        raw = random_bytes(PRIVATE_KEY_LENGTH)
    return session_key_from_private_material(raw, created_at=now, expires_at=now + expiry_duration)


def is_session_key_expired(key: SessionKey, now: int) -> bool:
    return now >= key.expires_at


def is_session_key_active(key: SessionKey, now: int) -> bool:
    return not is_session_key_expired(key, now)


def get_session_key_remaining_time(key: SessionKey, now: int) -> int:
    return max(0, key.expires_at - now)


def serialize_session_key(key: SessionKey) -> str:
    """JSON snapshot including the private key. Store it securely."""
    return json.dumps(
        {
            "version": SERIALIZATION_VERSION,
            "privateKey": "0x" + key.private_key.hex(),
            "address": key.address,
            "createdAt": key.created_at,
            "expiresAt": key.expires_at,
        },
        sort_keys=True,
    )


def _require_int(doc: dict, name: str) -> int:
    value = doc.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"Session key field {name!r} must be an integer")
    if value < 0:
        raise DecodeError(f"Session key field {name!r} must be non-negative")
    return value


def _require_str(doc: dict, name: str) -> str:
    value = doc.get(name)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"Session key field {name!r} must be a non-empty string")
    return value


def deserialize_session_key(data: Union[str, bytes]) -> SessionKey:
    """Inverse of ``serialize_session_key``."""
    try:
        doc = json.loads(data)
    except ValueError as e:
        raise DecodeError(f"Session key is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise DecodeError("Session key document must be a JSON object")

    version = _require_int(doc, "version")
    if version != SERIALIZATION_VERSION:
        raise DecodeError(f"Unsupported session key version: {version}")
    private_key = _require_str(doc, "privateKey")
    address = _require_str(doc, "address")
    created_at = _require_int(doc, "createdAt")
    expires_at = _require_int(doc, "expiresAt")

    key = session_key_from_private_material(private_key, created_at, expires_at)
    try:
        expected = to_checksum_address(address)
    except ValueError as e:
        raise DecodeError(f"Session key address is malformed: {address}") from e
    if key.address != expected:
        raise InvalidKeyMaterialError(
            f"Private key belongs to {key.address}, document claims {expected}"
        )
    return key


class SessionKeyring:
    """
    Active session keys, one per agent.

    Expired keys are evicted on access; listing never exposes key material.
    """

    def __init__(self, random_bytes: Callable[[int], bytes] = secrets.token_bytes):
        self._keys: dict[str, SessionKey] = {}
        self._lock = threading.Lock()
        self._random_bytes = random_bytes

    def issue(self, agent_id: str, duration: int, now: int) -> SessionKey:
        """Generate a key for ``agent_id``, replacing any previous one."""
        key = generate_session_key(duration, now, random_bytes=self._random_bytes)
        with self._lock:
            self._keys[agent_id] = key
        logger.info(
            "Session key issued for %s: %s (ttl: %ds)", agent_id, key.address, duration
        )
        return key

    def add(self, agent_id: str, key: SessionKey) -> None:
        with self._lock:
            self._keys[agent_id] = key

    def active_key(self, agent_id: str, now: int) -> SessionKey:
        """Return the agent's key. Raises if expired (and evicts) or unknown."""
        with self._lock:
            key = self._keys.get(agent_id)
            if key is None:
                raise KeyError(f"No session key for agent: {agent_id}")
            if is_session_key_expired(key, now):
                del self._keys[agent_id]
                expired = True
            else:
                expired = False
        if expired:
            logger.info("Session key for %s expired at %d", agent_id, key.expires_at)
            raise SessionKeyExpiredError(
                f"Session key for {agent_id} expired at {key.expires_at}"
            )
        return key

    def revoke(self, agent_id: str) -> bool:
        with self._lock:
            key = self._keys.pop(agent_id, None)
        if key is not None:
            logger.info("Session key revoked for %s: %s", agent_id, key.address)
        return key is not None

    def prune(self, now: int) -> list[str]:
        """Drop expired keys and return the agents they belonged to."""
        with self._lock:
            expired = [a for a, k in self._keys.items() if is_session_key_expired(k, now)]
            for agent_id in expired:
                del self._keys[agent_id]
        return expired

    def list_keys(self, now: int) -> list[dict]:
        self.prune(now)
        with self._lock:
            items = list(self._keys.items())
        return [{"agent_id": agent_id, **key.to_public_dict(now)} for agent_id, key in items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
