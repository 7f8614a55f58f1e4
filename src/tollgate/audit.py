"""
Audit trail for payment and session key activity.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads. Only the HTTP client and the CLI
write here; policy, budget and signing code stay free of I/O.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import tollgate_home
from .storage import ensure_private_dir, ensure_private_file


AUDIT_KEY_ENV = "TOLLGATE_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    SESSION_KEY_ISSUED = "session_key_issued"
    SESSION_KEY_REVOKED = "session_key_revoked"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_DENIED = "payment_denied"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_ROLLED_BACK = "payment_rolled_back"
    POLICY_ENCODED = "policy_encoded"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    agent_id: Optional[str] = None
    amount: Optional[int] = None
    resource: Optional[str] = None
    domain: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        home = tollgate_home()
        self.path = path or home / "audit.jsonl"
        self.key_path = key_path or home / "secrets" / "audit_hmac.key"

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        amount: Optional[int] = None,
        resource: Optional[str] = None,
        domain: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        timestamp: Optional[float] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time() if timestamp is None else timestamp,
            "agent_id": agent_id,
            "amount": amount,
            "resource": resource,
            "domain": domain,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with self._lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)
            self._last_hash = current_hash
        return event

    def read_events(
        self,
        agent_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if agent_id and raw.get("agent_id") != agent_id:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        with self._lock:
            self._last_hash = expected_prev
        return events[-limit:]

    def summary(self, agent_id: Optional[str] = None) -> dict:
        events = self.read_events(agent_id=agent_id, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        spent = sum(
            e.amount or 0 for e in events if e.event_type == EventType.PAYMENT_SETTLED.value
        )
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "settled_amount": spent,
            "last_event": events[-1].to_json() if events else None,
        }
