"""
Persistence for conversation history, participant profiles, and the
pending-relay slot.

Three independently keyed collections back the mediation engine:

* ``history`` -- one document per participant holding the trimmed message
  log.  Every write replaces the whole document.
* ``profile`` -- one document per participant; writes merge fields.
* ``pending`` -- a single document keyed by the Caregiver/Subject pair,
  written with an optimistic version check.

Each document-store operation is atomic per key.  There is no cross-key
transaction.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

from pydantic import ValidationError

from carerelay.messaging import TransportError
from carerelay.models import Message, MessageRole, PendingRelay, ProfileRecord

logger = logging.getLogger(__name__)

HISTORY = "history"
PROFILE = "profile"
PENDING = "pending"

DEFAULT_TOKEN_BUDGET = 4000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PersistenceError(TransportError):
    """Raised when the backing document store is unavailable."""
    pass


class VersionConflictError(Exception):
    """Raised when a versioned write finds a different version stored."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on '{key}': expected {expected}, found {actual}."
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class ProfileValidationError(ValueError):
    """Raised when a profile payload is not a mapping of strings."""
    pass


# ---------------------------------------------------------------------------
# Document store seam
# ---------------------------------------------------------------------------

class DocumentStore(Protocol):
    """Minimal keyed document store.

    ``expected_version`` compares against the stored document's
    ``version`` field (0 when no document exists) and raises
    ``VersionConflictError`` on mismatch.
    """

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]: ...

    def put(
        self,
        collection: str,
        key: str,
        document: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> None: ...

    def merge(self, collection: str, key: str, fields: dict[str, Any]) -> dict[str, Any]: ...


class InMemoryDocumentStore:
    """Thread-safe in-process document store.

    Documents are deep-copied on the way in and out so callers never
    share mutable state with the store.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _check_version(
        self, collection: str, key: str, expected_version: Optional[int]
    ) -> None:
        if expected_version is None:
            return
        current = self._collections.get(collection, {}).get(key)
        actual = int(current.get("version", 0)) if current else 0
        if actual != expected_version:
            raise VersionConflictError(f"{collection}/{key}", expected_version, actual)

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def put(
        self,
        collection: str,
        key: str,
        document: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> None:
        with self._lock:
            self._check_version(collection, key, expected_version)
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    def merge(self, collection: str, key: str, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            merged = dict(docs.get(key, {}))
            merged.update(copy.deepcopy(fields))
            docs[key] = merged
            return copy.deepcopy(merged)


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

def approximate_tokens(message: Message) -> float:
    """Token-count proxy: one token per four characters."""
    return len(message.content) / 4


def trim_by_token(
    messages: list[Message], budget: int = DEFAULT_TOKEN_BUDGET
) -> list[Message]:
    """Return the longest newest suffix whose approximate cost fits ``budget``.

    Order is preserved and messages are never split.  When the newest
    message alone exceeds the budget it is returned on its own.
    """
    kept: list[Message] = []
    total = 0.0
    for message in reversed(messages):
        total += approximate_tokens(message)
        if total > budget:
            break
        kept.append(message)
    if not kept and messages:
        kept.append(messages[-1])
    kept.reverse()
    return kept


class ConversationStore:
    """Per-participant message log with token-budgeted trimming."""

    def __init__(
        self, store: DocumentStore, token_budget: int = DEFAULT_TOKEN_BUDGET
    ) -> None:
        self._store = store
        self.token_budget = token_budget

    def load(self, participant_id: str) -> list[Message]:
        doc = self._store.get(HISTORY, participant_id) or {}
        return [Message(**m) for m in doc.get("messages", [])]

    def append_and_trim(self, participant_id: str, message: Message) -> list[Message]:
        """Append ``message``, trim to the budget, and persist the result."""
        history = self.load(participant_id)
        history.append(message)
        trimmed = trim_by_token(history, self.token_budget)
        if len(trimmed) < len(history):
            logger.debug(
                "Trimmed %d old message(s) for %s",
                len(history) - len(trimmed), participant_id,
            )
        self._store.put(
            HISTORY,
            participant_id,
            {"messages": [m.model_dump(mode="json") for m in trimmed]},
        )
        return trimmed

    def recent(
        self,
        participant_id: str,
        limit: int,
        roles: Iterable[MessageRole] = (MessageRole.USER, MessageRole.ASSISTANT),
    ) -> list[Message]:
        """Newest ``limit`` messages whose role is in ``roles``, oldest first."""
        allowed = set(roles)
        window = self.load(participant_id)[-limit:]
        return [m for m in window if m.role in allowed]


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

def _validate_profile_fields(fields: Any) -> dict[str, str]:
    if not isinstance(fields, dict):
        raise ProfileValidationError("Profile payload must be a JSON object.")
    for key, value in fields.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ProfileValidationError(
                f"Profile field '{key}' must map to a string value."
            )
    return fields


class ProfileStore:
    """Per-participant attribute records, created lazily and merged on write."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get(self, participant_id: str) -> Optional[ProfileRecord]:
        doc = self._store.get(PROFILE, participant_id)
        if not doc or not doc.get("name"):
            return None
        return ProfileRecord(**doc)

    def get_or_init(
        self, participant_id: str, defaults: dict[str, str]
    ) -> ProfileRecord:
        """Return the stored profile, inserting ``defaults`` when it has no name.

        Existence is decided by the ``name`` field, not by the document:
        a stored document without a name is completed with the defaults.
        """
        doc = self._store.get(PROFILE, participant_id) or {}
        if doc.get("name"):
            return ProfileRecord(**doc)
        merged = self._store.merge(PROFILE, participant_id, _validate_profile_fields(dict(defaults)))
        logger.info("Initialized profile for %s", participant_id)
        return ProfileRecord(**merged)

    def update(self, participant_id: str, partial: dict[str, Any]) -> ProfileRecord:
        """Merge ``partial`` into the stored profile; other fields are untouched.

        Raises:
            ProfileValidationError: If ``partial`` is not a mapping of
                strings.  Nothing is written in that case.
        """
        fields = _validate_profile_fields(partial)
        merged = self._store.merge(PROFILE, participant_id, fields)
        try:
            return ProfileRecord(**merged)
        except ValidationError as exc:
            raise ProfileValidationError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Pending relay slot
# ---------------------------------------------------------------------------

class PendingRelayStore:
    """Versioned storage for the single pending-relay proposal of a pair.

    Clearing leaves a tombstone carrying the next version rather than
    deleting the document, so versions only ever increase and a stale
    writer can never match a newer proposal.
    """

    def __init__(self, store: DocumentStore, pair_key: str) -> None:
        self._store = store
        self.pair_key = pair_key

    def snapshot(self) -> tuple[Optional[PendingRelay], int]:
        """Return the held proposal (or None) and the slot's current version."""
        doc = self._store.get(PENDING, self.pair_key)
        if not doc:
            return None, 0
        version = int(doc.get("version", 0))
        if not doc.get("text"):
            return None, version
        return PendingRelay(**doc), version

    def load(self) -> Optional[PendingRelay]:
        return self.snapshot()[0]

    def save(
        self,
        text: str,
        expected_version: int,
        proposed_at: Optional[datetime] = None,
    ) -> PendingRelay:
        """Write a proposal over version ``expected_version``.

        ``proposed_at`` defaults to the current UTC time.

        Raises:
            VersionConflictError: If another writer changed the slot since
                it was read.
        """
        relay = PendingRelay(
            text=text,
            version=expected_version + 1,
            proposed_at=proposed_at or datetime.now(timezone.utc),
        )
        self._store.put(
            PENDING,
            self.pair_key,
            relay.model_dump(mode="json"),
            expected_version=expected_version,
        )
        return relay

    def clear(self, expected_version: int) -> None:
        """Empty the slot only if it is still at ``expected_version``.

        Raises:
            VersionConflictError: If the slot changed since it was read.
        """
        self._store.put(
            PENDING,
            self.pair_key,
            {"text": None, "version": expected_version + 1},
            expected_version=expected_version,
        )
