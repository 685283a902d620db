"""
Decision engine -- turns a participant's conversation into either a
free-form reply or a structured relay decision.

The engine depends only on the ``LanguageModelBackend`` protocol, so any
backend that can complete a transcript and return the arguments of a
forced function call can be swapped in.  Every backend failure, and every
structured result that does not validate, surfaces as ``DecisionError``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Union

from pydantic import ValidationError

from carerelay.llm_client import LLMResponseError, LLMTransportError
from carerelay.models import DecisionResult, Message, MessageRole, ProfileRecord, Role
from carerelay.prompts import (
    DECISION_FUNCTION_NAME,
    DECISION_SCHEMA,
    digest_instruction,
    instruction_for,
)

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (LLMTransportError, LLMResponseError)


class DecisionError(Exception):
    """The backend could not produce a usable reply or decision."""
    pass


class LanguageModelBackend(Protocol):
    """Capabilities the engine needs from a language-model backend."""

    def complete(self, messages: list[dict[str, str]]) -> str: ...

    def structured_decision(
        self, name: str, schema: dict[str, Any], messages: list[dict[str, str]]
    ) -> dict[str, Any]: ...


class DecisionEngine:
    """Builds transcripts and extracts replies or relay decisions."""

    def __init__(self, backend: LanguageModelBackend, assistant_name: str) -> None:
        self._backend = backend
        self.assistant_name = assistant_name

    def compose(
        self,
        role: Role,
        profiles: dict[Role, ProfileRecord],
        history: list[Message],
    ) -> list[Message]:
        """Prepend the role's system instruction to ``history``.

        Args:
            role: Role of the participant being answered.
            profiles: Profiles keyed by ``Role.CAREGIVER`` and ``Role.SUBJECT``.
            history: The participant's trimmed conversation, oldest first.

        Returns:
            A new transcript; ``history`` is not modified.
        """
        instruction = instruction_for(
            role,
            self.assistant_name,
            profiles.get(Role.CAREGIVER, ProfileRecord()),
            profiles.get(Role.SUBJECT, ProfileRecord()),
        )
        return [Message(role=MessageRole.SYSTEM, content=instruction), *history]

    def decide(
        self, transcript: list[Message], role: Role
    ) -> Union[DecisionResult, str]:
        """Ask the backend for a structured decision (Caregiver) or a reply.

        Raises:
            DecisionError: If the backend fails or the structured result
                does not satisfy the decision schema.
        """
        payload = [m.as_payload() for m in transcript]
        if role != Role.CAREGIVER:
            return self._complete(payload)

        try:
            raw = self._backend.structured_decision(
                DECISION_FUNCTION_NAME, DECISION_SCHEMA, payload
            )
        except _BACKEND_ERRORS as exc:
            logger.error("Structured decision failed: %s", exc)
            raise DecisionError("structured decision unavailable") from exc

        try:
            decision = DecisionResult.model_validate(raw)
        except ValidationError as exc:
            logger.error("Structured decision failed validation: %s", exc)
            raise DecisionError("structured decision failed validation") from exc

        logger.info(
            "Decision: report=%s discuss=%s",
            "yes" if decision.has_report else "no", decision.discuss,
        )
        return decision

    def summarize(self, caregiver: ProfileRecord, window: list[Message]) -> str:
        """Summarize a window of the Caregiver's conversation."""
        lines = "\n".join(f"{m.role.value}: {m.content}" for m in window)
        payload = [
            {"role": MessageRole.SYSTEM.value, "content": digest_instruction(caregiver)},
            {"role": MessageRole.USER.value, "content": lines},
        ]
        return self._complete(payload)

    def _complete(self, payload: list[dict[str, str]]) -> str:
        try:
            return self._backend.complete(payload)
        except _BACKEND_ERRORS as exc:
            logger.error("Completion failed: %s", exc)
            raise DecisionError("completion unavailable") from exc
