"""
Core data models for the carerelay mediation engine.

Two participants are distinguished by configuration: the ``CAREGIVER``,
whose conversation may be summarized and relayed, and the ``SUBJECT``, who
approves relays before they are delivered.  Everyone else is ``OTHER`` and
only ever receives ordinary conversational replies.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Participant roles, resolved once per inbound event."""

    CAREGIVER = "CAREGIVER"
    SUBJECT = "SUBJECT"
    OTHER = "OTHER"


class MessageRole(str, enum.Enum):
    """Speaker of a single conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ApprovalState(str, enum.Enum):
    """States of the pending-relay approval machine.

    * ``IDLE``              -- no proposal is held.
    * ``AWAITING_APPROVAL`` -- one proposal waits for the Subject's
      confirmation keyword.
    """

    IDLE = "IDLE"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"


class Command(str, enum.Enum):
    """Kinds of inbound message the router knows how to dispatch."""

    CHAT = "chat"
    CONFIRM_RELAY = "confirm_relay"
    CANCEL_RELAY = "cancel_relay"
    SET_PROFILE = "set_profile"
    REQUEST_DIGEST = "request_digest"


# ---------------------------------------------------------------------------
# Conversation and profile records
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """One turn in a participant's conversation log."""

    role: MessageRole
    content: str

    def as_payload(self) -> dict[str, str]:
        """Return the chat-completions wire shape of this message."""
        return {"role": self.role.value, "content": self.content}


class ProfileRecord(BaseModel):
    """Per-participant attributes used to personalize prompts.

    ``name`` and ``tone`` are always present.  Additional string-valued
    attributes set through the profile override command are kept as extra
    fields and survive round-trips through the store.
    """

    model_config = ConfigDict(extra="allow")

    name: str = ""
    tone: str = ""

    def as_prompt_dict(self) -> dict[str, Any]:
        return self.model_dump()


class PendingRelay(BaseModel):
    """The single proposal awaiting the Subject's confirmation.

    ``version`` increases on every write to the slot and is checked by the
    store on update and delete.
    """

    text: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    proposed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class DecisionResult(BaseModel):
    """Structured decision extracted from a Caregiver turn.

    * ``report_text == ""``                  -- nothing relay-worthy.
    * ``report_text != ""``, ``discuss`` False -- relay to the Subject now.
    * ``report_text != ""``, ``discuss`` True  -- hold for confirmation.

    ``reply`` is the assistant's conversational answer to the Caregiver,
    when the backend supplies one.
    """

    report_text: str
    discuss: bool
    reply: Optional[str] = None

    @property
    def has_report(self) -> bool:
        return bool(self.report_text.strip())


# ---------------------------------------------------------------------------
# Transport-facing models
# ---------------------------------------------------------------------------

class InboundEvent(BaseModel):
    """A single event from a webhook delivery batch."""

    sender_id: str
    message_type: str = "text"
    text: str = ""
    reply_token: str = ""

    @property
    def is_text(self) -> bool:
        return self.message_type == "text"

    @classmethod
    def from_line_event(cls, event: dict[str, Any]) -> "InboundEvent":
        """Build an event from a LINE Messaging API webhook event dict.

        Non-message events (follow, postback, ...) map to a non-text
        ``message_type`` so the router ignores them.
        """
        message = event.get("message") or {}
        if event.get("type") != "message":
            message_type = str(event.get("type") or "unknown")
        else:
            message_type = str(message.get("type") or "unknown")
        return cls(
            sender_id=str((event.get("source") or {}).get("userId") or ""),
            message_type=message_type,
            text=str(message.get("text") or ""),
            reply_token=str(event.get("replyToken") or ""),
        )


class EventOutcome(BaseModel):
    """What the router did with one inbound event."""

    sender_id: str
    role: Role
    handled: bool = True
    command: Optional[Command] = None
    action: str = ""
