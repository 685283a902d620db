"""
Mediation Router -- per-event dispatch for the Caregiver/Subject pair.

For every inbound text event the router:

1. resolves the sender's role once (CAREGIVER, SUBJECT, or OTHER);
2. makes sure both distinguished profiles exist;
3. classifies the text as a command and checks the permission table;
4. dispatches to the command's handler, falling back to ordinary
   conversation when the role may not issue the command or the command
   has nothing to act on (for example a confirmation with no proposal).

The router owns no durable state.  A delivery batch is processed with one
concurrent task per event; there is no ordering guarantee between events.
"""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from carerelay.approval import ApprovalCoordinator
from carerelay.audit import AuditEventType, AuditLog
from carerelay.config import MediationConfig
from carerelay.decision_engine import DecisionEngine, DecisionError, LanguageModelBackend
from carerelay.llm_client import ChatCompletionsClient
from carerelay.messaging import LineMessagingClient, Messenger, TransportError
from carerelay.models import (
    Command,
    DecisionResult,
    EventOutcome,
    InboundEvent,
    Message,
    MessageRole,
    ProfileRecord,
    Role,
)
from carerelay.permissions import check_permission
from carerelay.stores import (
    ConversationStore,
    DocumentStore,
    InMemoryDocumentStore,
    PendingRelayStore,
    ProfileStore,
    ProfileValidationError,
)

logger = logging.getLogger(__name__)

# Handlers return the action taken, or None to fall through to conversation.
Handler = Callable[[InboundEvent, Role, str, dict[Role, ProfileRecord]], Optional[str]]


class BatchDeliveryError(TransportError):
    """One or more events of a batch failed on transport or persistence."""

    def __init__(self, failures: list[Exception], outcomes: list[Optional[EventOutcome]]) -> None:
        super().__init__(f"{len(failures)} event(s) in the batch failed")
        self.failures = failures
        self.outcomes = outcomes


class MediationRouter:
    """Top-level dispatcher from inbound events to replies and relays."""

    def __init__(
        self,
        config: MediationConfig,
        conversations: ConversationStore,
        profiles: ProfileStore,
        engine: DecisionEngine,
        coordinator: ApprovalCoordinator,
        messenger: Messenger,
        audit_log: AuditLog,
    ) -> None:
        self._config = config
        self._conversations = conversations
        self._profiles = profiles
        self._engine = engine
        self._coordinator = coordinator
        self._messenger = messenger
        self._audit_log = audit_log
        self._digest_patterns = [re.compile(p) for p in config.digest_patterns]
        self._handlers: dict[Command, Handler] = {
            Command.SET_PROFILE: self._handle_set_profile,
            Command.CONFIRM_RELAY: self._handle_confirm,
            Command.CANCEL_RELAY: self._handle_cancel,
            Command.REQUEST_DIGEST: self._handle_digest,
            Command.CHAT: self._handle_chat,
        }

    # -- classification --

    def resolve_role(self, sender_id: str) -> Role:
        if sender_id == self._config.caregiver_id:
            return Role.CAREGIVER
        if sender_id == self._config.subject_id:
            return Role.SUBJECT
        return Role.OTHER

    def _profile_target(self, text: str) -> Optional[tuple[str, str]]:
        """Return ``(prefix, participant_id)`` for a profile override command."""
        for prefix, target in (
            (self._config.caregiver_profile_prefix, self._config.caregiver_id),
            (self._config.subject_profile_prefix, self._config.subject_id),
        ):
            if text.startswith(prefix):
                return prefix, target
        return None

    def _is_digest_request(self, text: str) -> bool:
        if text.lower() == self._config.digest_keyword.lower():
            return True
        return any(p.search(text) for p in self._digest_patterns)

    def classify(self, role: Role, text: str) -> Command:
        """Map message text to the command ``role`` is allowed to issue."""
        if self._profile_target(text):
            command = Command.SET_PROFILE
        elif self._coordinator.is_confirmation(text):
            command = Command.CONFIRM_RELAY
        elif self._coordinator.is_cancellation(text):
            command = Command.CANCEL_RELAY
        elif self._is_digest_request(text):
            command = Command.REQUEST_DIGEST
        else:
            return Command.CHAT
        return command if check_permission(role, command) else Command.CHAT

    # -- dispatch --

    def _ensure_profiles(self) -> dict[Role, ProfileRecord]:
        defaults = self._config.profile_defaults
        return {
            Role.CAREGIVER: self._profiles.get_or_init(self._config.caregiver_id, defaults.caregiver),
            Role.SUBJECT: self._profiles.get_or_init(self._config.subject_id, defaults.subject),
        }

    def handle_event(self, event: InboundEvent) -> EventOutcome:
        """Process a single inbound event.

        Raises:
            TransportError: If a reply, push, or store operation fails.
        """
        role = self.resolve_role(event.sender_id)
        if not event.is_text:
            logger.debug("Ignoring %s event from %s", event.message_type, event.sender_id)
            return EventOutcome(sender_id=event.sender_id, role=role, handled=False)

        text = event.text.strip()
        profiles = self._ensure_profiles()
        command = self.classify(role, text)
        action = self._handlers[command](event, role, text, profiles)
        if action is None:
            command = Command.CHAT
            action = self._handle_chat(event, role, text, profiles)

        logger.info("Handled %s from %s: %s", command.value, role.value, action)
        return EventOutcome(
            sender_id=event.sender_id, role=role, command=command, action=action
        )

    def handle_batch(self, events: list[InboundEvent]) -> list[EventOutcome]:
        """Process every event of a delivery batch concurrently.

        Outcomes are returned in input order.

        Raises:
            BatchDeliveryError: After all tasks finish, if any event failed
                with ``TransportError`` (persistence failures included).
        """
        with ThreadPoolExecutor(max_workers=self._config.max_workers) as pool:
            futures = [pool.submit(self.handle_event, e) for e in events]

        outcomes: list[Optional[EventOutcome]] = []
        failures: list[Exception] = []
        for future in futures:
            try:
                outcomes.append(future.result())
            except TransportError as exc:
                logger.error("Event handling failed: %s", exc)
                failures.append(exc)
                outcomes.append(None)
        if failures:
            raise BatchDeliveryError(failures, outcomes)
        return outcomes

    # -- handlers --

    def _handle_set_profile(
        self, event: InboundEvent, role: Role, text: str, profiles: dict[Role, ProfileRecord]
    ) -> Optional[str]:
        prefix, target = self._profile_target(text)
        messages = self._config.messages
        try:
            payload = json.loads(text[len(prefix):].strip())
            self._profiles.update(target, payload)
        except (json.JSONDecodeError, ProfileValidationError) as exc:
            logger.warning("Rejected profile override for %s: %s", target, exc)
            self._audit_log.record(
                AuditEventType.PROFILE_REJECTED,
                actor_id=event.sender_id,
                actor_role=role.value,
                target_entity=target,
            )
            self._messenger.reply(event.reply_token, messages.profile_invalid)
            return "profile_rejected"

        self._audit_log.record(
            AuditEventType.PROFILE_UPDATED,
            actor_id=event.sender_id,
            actor_role=role.value,
            target_entity=target,
            fields=sorted(payload),
        )
        self._messenger.reply(event.reply_token, messages.profile_updated)
        return "profile_updated"

    def _handle_confirm(
        self, event: InboundEvent, role: Role, text: str, profiles: dict[Role, ProfileRecord]
    ) -> Optional[str]:
        if not self._coordinator.confirm(role):
            return None
        self._messenger.reply(event.reply_token, self._config.messages.relay_confirmed)
        return "relay_confirmed"

    def _handle_cancel(
        self, event: InboundEvent, role: Role, text: str, profiles: dict[Role, ProfileRecord]
    ) -> Optional[str]:
        if not self._coordinator.cancel(role):
            return None
        self._messenger.reply(event.reply_token, self._config.messages.relay_cancelled)
        return "relay_cancelled"

    def _handle_digest(
        self, event: InboundEvent, role: Role, text: str, profiles: dict[Role, ProfileRecord]
    ) -> Optional[str]:
        messages = self._config.messages
        caregiver = profiles[Role.CAREGIVER]
        window = self._conversations.recent(self._config.caregiver_id, self._config.digest_window)
        if not window:
            self._messenger.reply(event.reply_token, messages.digest_empty)
            return "digest_empty"

        speakers = {
            MessageRole.USER: caregiver.name,
            MessageRole.ASSISTANT: self._config.assistant_name,
        }
        transcript = "\n".join(f"{speakers[m.role]}: {m.content}" for m in window)
        try:
            summary = self._engine.summarize(caregiver, window)
        except DecisionError:
            summary = messages.apology

        self._audit_log.record(
            AuditEventType.DIGEST_GENERATED,
            actor_id=event.sender_id,
            actor_role=role.value,
            target_entity=self._config.caregiver_id,
            message_count=len(window),
        )
        self._messenger.reply(
            event.reply_token,
            f"{messages.digest_header}\n{transcript}\n\n{messages.digest_summary_header}\n{summary}",
        )
        return "digest"

    def _handle_chat(
        self, event: InboundEvent, role: Role, text: str, profiles: dict[Role, ProfileRecord]
    ) -> Optional[str]:
        history = self._conversations.append_and_trim(
            event.sender_id, Message(role=MessageRole.USER, content=text)
        )
        transcript = self._engine.compose(role, profiles, history)
        try:
            result = self._engine.decide(transcript, role)
        except DecisionError as exc:
            self._audit_log.record(
                AuditEventType.DECISION_FAILED,
                actor_id=event.sender_id,
                actor_role=role.value,
                reason=str(exc),
            )
            self._messenger.reply(event.reply_token, self._config.messages.apology)
            return "apology"

        if isinstance(result, DecisionResult):
            action = self._coordinator.apply_decision(result, role)
            reply = (result.reply or "").strip() or self._config.messages.caregiver_ack
        else:
            action = "replied"
            reply = result

        self._messenger.reply(event.reply_token, reply)
        self._conversations.append_and_trim(
            event.sender_id, Message(role=MessageRole.ASSISTANT, content=reply)
        )
        return action


def build_router(
    config: MediationConfig,
    messenger: Optional[Messenger] = None,
    backend: Optional[LanguageModelBackend] = None,
    document_store: Optional[DocumentStore] = None,
    audit_log: Optional[AuditLog] = None,
) -> MediationRouter:
    """Wire a router from configuration, defaulting every collaborator.

    Defaults: LINE messaging, the chat-completions backend, and an
    in-memory document store.
    """
    messenger = messenger or LineMessagingClient(config.line_channel_access_token)
    backend = backend or ChatCompletionsClient(config.llm)
    document_store = document_store or InMemoryDocumentStore()
    audit_log = audit_log or AuditLog()

    coordinator = ApprovalCoordinator(
        PendingRelayStore(document_store, config.pair_key),
        messenger,
        config,
        audit_log,
    )
    return MediationRouter(
        config=config,
        conversations=ConversationStore(document_store, config.history_token_budget),
        profiles=ProfileStore(document_store),
        engine=DecisionEngine(backend, config.assistant_name),
        coordinator=coordinator,
        messenger=messenger,
        audit_log=audit_log,
    )
