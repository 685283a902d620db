"""
Pending-Relay Approval Coordinator.

Caregiver-derived information reaches the Subject either immediately or as
a proposal; it only ever reaches the Caregiver's side after the Subject
explicitly confirms.  The coordinator owns the single pending-relay slot of
the Caregiver/Subject pair and implements the state machine:

    IDLE --[report, discuss=False]--> IDLE              push report to Subject
    IDLE --[report, discuss=True]---> AWAITING_APPROVAL push proposal to Subject
    AWAITING_APPROVAL --[confirm]---> IDLE              push text to Caregiver
    AWAITING_APPROVAL --[cancel]----> IDLE              no push
    AWAITING_APPROVAL --[TTL]-------> IDLE              no push (TTL optional)
    any --[empty report]------------> unchanged         no push

A report arriving while a proposal is held replaces it (last write wins).
The replacement is logged and audited as ``PROPOSAL_SUPERSEDED``.

**Concurrency:**  every write to the slot carries the version that was
read.  A conflicting proposal write is retried against a fresh read and
surfaces as ``PersistenceError`` once the attempts run out.  A
confirmation or cancellation that loses the race leaves the newer
proposal in place.

**Delivery hazard:**  the slot and the messaging channel are not updated
atomically.  A proposal is persisted before it is pushed, so a failed push
leaves a proposal the Subject never saw (the Subject can still confirm
it).  A confirmation is pushed before the slot is cleared, so a failure
in between may deliver the same text twice on a repeated confirmation.
Both are accepted at-least-once behaviors.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from carerelay.audit import AuditEventType, AuditLog
from carerelay.config import MediationConfig
from carerelay.messaging import Messenger
from carerelay.models import ApprovalState, Command, DecisionResult, PendingRelay, Role
from carerelay.permissions import require_permission
from carerelay.stores import PendingRelayStore, PersistenceError, VersionConflictError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


class ApprovalCoordinator:
    """Owns the pending-relay slot and every push it causes."""

    def __init__(
        self,
        store: PendingRelayStore,
        messenger: Messenger,
        config: MediationConfig,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        max_write_attempts: int = 3,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._config = config
        self._audit_log = audit_log
        self._clock = clock
        self._max_write_attempts = max_write_attempts

    # -- keyword matching --

    def is_confirmation(self, text: str) -> bool:
        return text.strip().lower() == self._config.confirmation_keyword.strip().lower()

    def is_cancellation(self, text: str) -> bool:
        keyword = self._config.cancel_keyword
        return keyword is not None and text.strip().lower() == keyword.strip().lower()

    # -- state --

    def _snapshot(self) -> tuple[Optional[PendingRelay], int]:
        """Read the slot, expiring a proposal older than the configured TTL."""
        relay, version = self._store.snapshot()
        ttl = self._config.pending_relay_ttl_seconds
        if relay is None or ttl is None:
            return relay, version
        if self._clock() - relay.proposed_at <= timedelta(seconds=ttl):
            return relay, version

        try:
            self._store.clear(version)
        except VersionConflictError:
            return self._store.snapshot()
        logger.info("Pending relay v%d expired after %ds", version, ttl)
        self._audit_log.record(
            AuditEventType.PROPOSAL_EXPIRED,
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ACTOR,
            target_entity=self._store.pair_key,
            version=version,
            ttl_seconds=ttl,
        )
        return None, version + 1

    def state(self) -> ApprovalState:
        relay, _ = self._snapshot()
        return ApprovalState.AWAITING_APPROVAL if relay else ApprovalState.IDLE

    def pending(self) -> Optional[PendingRelay]:
        return self._snapshot()[0]

    # -- transitions --

    def apply_decision(self, decision: DecisionResult, role: Role = Role.CAREGIVER) -> str:
        """Act on a Caregiver decision.

        Returns:
            ``"none"``, ``"relayed"`` or ``"proposed"``.

        Raises:
            PermissionError: If ``role`` is not ``CAREGIVER``.
        """
        if role != Role.CAREGIVER:
            raise PermissionError(
                f"Role '{role.value}' cannot produce relay decisions."
            )
        if not decision.has_report:
            return "none"
        if not decision.discuss:
            self._relay_now(decision.report_text)
            return "relayed"
        self._propose(decision.report_text)
        return "proposed"

    def _relay_now(self, text: str) -> None:
        header = self._config.messages.auto_report_header
        self._messenger.push(
            self._config.subject_id, f"{header}\n\n{text}" if header else text
        )
        logger.info("Relayed report to Subject without confirmation")
        self._audit_log.record(
            AuditEventType.RELAY_SENT,
            actor_id=self._config.caregiver_id,
            actor_role=Role.CAREGIVER.value,
            target_entity=self._config.subject_id,
            text=text,
        )

    def _propose(self, text: str) -> None:
        """Hold ``text`` for confirmation and show it to the Subject.

        Raises:
            PersistenceError: If every write attempt lost a version race.
        """
        last_conflict: Optional[VersionConflictError] = None
        for attempt in range(1, self._max_write_attempts + 1):
            previous, version = self._snapshot()
            try:
                relay = self._store.save(
                    text, expected_version=version, proposed_at=self._clock()
                )
            except VersionConflictError as exc:
                logger.warning("Proposal write attempt %d lost a race: %s", attempt, exc)
                last_conflict = exc
                continue
            break
        else:
            logger.error(
                "Proposal not stored after %d attempts", self._max_write_attempts
            )
            raise PersistenceError(
                f"Pending relay '{self._store.pair_key}' could not be written"
            ) from last_conflict

        if previous is not None:
            logger.warning(
                "Proposal v%d replaced unconfirmed proposal v%d",
                relay.version, previous.version,
            )
            self._audit_log.record(
                AuditEventType.PROPOSAL_SUPERSEDED,
                actor_id=SYSTEM_ACTOR,
                actor_role=SYSTEM_ACTOR,
                target_entity=self._store.pair_key,
                previous_version=previous.version,
                previous_text=previous.text,
            )

        self._messenger.push(self._config.subject_id, self.proposal_message(text))
        logger.info("Proposal v%d sent to Subject", relay.version)
        self._audit_log.record(
            AuditEventType.RELAY_PROPOSED,
            actor_id=self._config.caregiver_id,
            actor_role=Role.CAREGIVER.value,
            target_entity=self._store.pair_key,
            version=relay.version,
            text=text,
        )

    def proposal_message(self, text: str) -> str:
        messages = self._config.messages
        lines = [
            messages.proposal_header,
            "",
            text,
            "",
            messages.proposal_instructions.format(keyword=self._config.confirmation_keyword),
        ]
        if self._config.cancel_keyword:
            lines.append(messages.proposal_cancel_hint.format(keyword=self._config.cancel_keyword))
        return "\n".join(lines)

    def confirm(self, role: Role) -> bool:
        """Deliver the held proposal to the Caregiver and clear the slot.

        Returns:
            True if a proposal was relayed; False when the slot was empty,
            in which case nothing is pushed.

        Raises:
            PermissionError: If ``role`` may not confirm relays.
        """
        require_permission(role, Command.CONFIRM_RELAY)
        relay, version = self._snapshot()
        if relay is None:
            logger.debug("Confirmation received with no pending relay")
            return False

        self._messenger.push(self._config.caregiver_id, relay.text)
        try:
            self._store.clear(version)
        except VersionConflictError:
            logger.warning(
                "Relay v%d delivered but a newer proposal arrived; keeping it", version
            )
        logger.info("Relay v%d confirmed and delivered to Caregiver", version)
        self._audit_log.record(
            AuditEventType.RELAY_CONFIRMED,
            actor_id=self._config.subject_id,
            actor_role=role.value,
            target_entity=self._config.caregiver_id,
            version=version,
            text=relay.text,
        )
        return True

    def cancel(self, role: Role) -> bool:
        """Discard the held proposal without pushing anything.

        Returns:
            True if a proposal was discarded.
        """
        require_permission(role, Command.CANCEL_RELAY)
        relay, version = self._snapshot()
        if relay is None:
            return False
        try:
            self._store.clear(version)
        except VersionConflictError:
            logger.warning("Cancellation of v%d lost to a newer proposal", version)
            return False
        logger.info("Relay v%d cancelled by Subject", version)
        self._audit_log.record(
            AuditEventType.RELAY_CANCELLED,
            actor_id=self._config.subject_id,
            actor_role=role.value,
            target_entity=self._store.pair_key,
            version=version,
        )
        return True
