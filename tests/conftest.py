"""
Shared fixtures: a recording messenger, a scripted language-model backend,
and a router wired to both over an in-memory document store.
"""

from __future__ import annotations

from typing import Any, Optional

import pytest

from carerelay.audit import AuditLog
from carerelay.config import MediationConfig
from carerelay.models import InboundEvent
from carerelay.router import build_router
from carerelay.stores import InMemoryDocumentStore

CAREGIVER_ID = "U-caregiver"
SUBJECT_ID = "U-subject"


class RecordingMessenger:
    """Messenger that records every reply and push."""

    def __init__(self) -> None:
        self.replies: list[tuple[str, str]] = []
        self.pushes: list[tuple[str, str]] = []

    def reply(self, reply_token: str, text: str) -> None:
        self.replies.append((reply_token, text))

    def push(self, participant_id: str, text: str) -> None:
        self.pushes.append((participant_id, text))

    def pushes_to(self, participant_id: str) -> list[str]:
        return [text for pid, text in self.pushes if pid == participant_id]

    @property
    def last_reply(self) -> str:
        return self.replies[-1][1]


class ScriptedBackend:
    """Language-model backend that replays queued results.

    Queued items that are exceptions are raised instead of returned.
    """

    def __init__(self) -> None:
        self.decisions: list[Any] = []
        self.completions: list[Any] = []
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    def complete(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(("complete", messages))
        item = self.completions.pop(0) if self.completions else "了解しました。"
        if isinstance(item, Exception):
            raise item
        return item

    def structured_decision(
        self, name: str, schema: dict[str, Any], messages: list[dict[str, str]]
    ) -> dict[str, Any]:
        self.calls.append(("structured_decision", messages))
        item = self.decisions.pop(0) if self.decisions else {"report_text": "", "discuss": False}
        if isinstance(item, Exception):
            raise item
        return item


def make_event(sender_id: str, text: str, reply_token: Optional[str] = None) -> InboundEvent:
    return InboundEvent(
        sender_id=sender_id,
        message_type="text",
        text=text,
        reply_token=reply_token or f"rt-{sender_id}-{abs(hash(text))}",
    )


@pytest.fixture
def config() -> MediationConfig:
    return MediationConfig(caregiver_id=CAREGIVER_ID, subject_id=SUBJECT_ID)


@pytest.fixture
def messenger() -> RecordingMessenger:
    return RecordingMessenger()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def router(config, messenger, backend, document_store, audit_log):
    return build_router(
        config,
        messenger=messenger,
        backend=backend,
        document_store=document_store,
        audit_log=audit_log,
    )
