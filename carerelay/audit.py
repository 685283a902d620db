"""
Append-Only, Hash-Chained Mediation Audit Log.

Every decision that moves information between participants -- immediate
relays, proposals, confirmations, cancellations, overwrites, expiries --
and every profile change or backend failure is recorded as an append-only
audit entry.  Entries are linked via a SHA-256 hash chain so that later
modification of any entry is detected by ``verify_chain()``.

Relayed text is personal conversation content.  ``export_for_review()``
replaces message-bearing metadata fields with a length marker before the
export leaves the process.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable action of the mediation engine."""

    # Approval workflow
    RELAY_SENT = "RELAY_SENT"
    RELAY_PROPOSED = "RELAY_PROPOSED"
    PROPOSAL_SUPERSEDED = "PROPOSAL_SUPERSEDED"
    RELAY_CONFIRMED = "RELAY_CONFIRMED"
    RELAY_CANCELLED = "RELAY_CANCELLED"
    PROPOSAL_EXPIRED = "PROPOSAL_EXPIRED"

    # Profiles
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PROFILE_REJECTED = "PROFILE_REJECTED"

    # Backend
    DECISION_FAILED = "DECISION_FAILED"
    DIGEST_GENERATED = "DIGEST_GENERATED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry, linked to its predecessor by hash."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor_id: str = Field(
        ...,
        description="Participant id, or 'SYSTEM' for automatic actions.",
    )
    actor_role: str = Field(
        ...,
        description="CAREGIVER, SUBJECT, OTHER, or SYSTEM.",
    )
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Participant id or pending-relay key the event concerns.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str, ensure_ascii=False).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Export redaction
# ---------------------------------------------------------------------------

# Metadata keys that carry conversation content.
_CONTENT_KEYS = {"text", "report_text", "previous_text", "summary", "payload"}


def redact_content(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace conversation content in ``metadata`` with length markers.

    Nested dictionaries are redacted recursively; other values pass
    through unchanged.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key in _CONTENT_KEYS and isinstance(value, str):
            redacted[key] = f"[REDACTED {len(value)} chars]"
        elif isinstance(value, dict):
            redacted[key] = redact_content(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There are no update or delete methods.  Appends are serialized so that
    concurrent event handlers produce a single linear chain.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current tail and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        actor_role: str,
        target_entity: str = "",
        **metadata: Any,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata,
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].compute_hash() if i else ""
            if entry.previous_hash != expected_prev:
                return (False, i)
            if entry.compute_hash() != hashes[i]:
                return (False, i)
        return (True, None)

    def query(
        self,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""
        with self._lock:
            entries = list(self._entries)
        results = []
        for entry in entries:
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """JSON-serializable export with conversation content redacted."""
        exported = []
        for entry in self.query(time_start=time_start, time_end=time_end):
            entry_dict = entry.model_dump()
            entry_dict["event_type"] = entry.event_type.value
            entry_dict["metadata"] = redact_content(entry.metadata)
            entry_dict["timestamp"] = entry.timestamp.isoformat()
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
