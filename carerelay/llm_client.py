"""
REST client for OpenAI-compatible chat-completions backends.

The client exposes the two capabilities the decision engine needs -- a
free-form completion and a schema-constrained function call -- and applies
an injected ``RetryPolicy`` to every request.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional

import requests

from carerelay.config import LLMSettings, RetryPolicy

logger = logging.getLogger(__name__)


class LLMTransportError(Exception):
    """The backend could not be reached or kept failing after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMResponseError(Exception):
    """The backend answered, but not in the shape that was requested."""
    pass


class ChatCompletionsClient:
    """Chat-completions client with an injected retry policy."""

    def __init__(self,
                 settings: LLMSettings,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if not settings.api_key:
            raise ValueError("An API key is required for the chat backend.")
        self.settings = settings
        self.retry_policy = retry_policy or settings.retry
        self.url = f"{settings.api_base.rstrip('/')}/chat/completions"
        self._sleep = sleep

    def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the assistant's free-form reply to ``messages``."""
        choice = self._post({"messages": messages})
        content = (choice.get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise LLMResponseError("Backend returned no message content.")
        return content.strip()

    def structured_decision(self,
                            name: str,
                            schema: dict[str, Any],
                            messages: list[dict[str, str]]) -> dict[str, Any]:
        """
        Force a single function call and return its parsed arguments.

        The assistant's text content, if the backend sent any alongside the
        call, is returned under the ``reply`` key when the schema does not
        already define one.
        """
        payload = {
            "messages": messages,
            "tools": [{"type": "function", "function": {"name": name, "parameters": schema}}],
            "tool_choice": {"type": "function", "function": {"name": name}},
        }
        choice = self._post(payload)
        message = choice.get("message") or {}

        raw_args = None
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            if function.get("name") == name:
                raw_args = function.get("arguments")
                break
        if raw_args is None and message.get("function_call"):
            # Legacy function-calling response shape
            raw_args = message["function_call"].get("arguments")
        if raw_args is None:
            raise LLMResponseError(f"Backend did not call '{name}'.")

        try:
            args = json.loads(raw_args)
        except (TypeError, json.JSONDecodeError) as e:
            raise LLMResponseError(f"Arguments for '{name}' are not valid JSON: {e}") from e
        if not isinstance(args, dict):
            raise LLMResponseError(f"Arguments for '{name}' are not a JSON object.")

        content = message.get("content")
        if isinstance(content, str) and content.strip() and "reply" not in args:
            args["reply"] = content.strip()
        logger.debug("Structured decision keys: %s", sorted(args))
        return args

    def _post(self, extra: dict[str, Any]) -> dict[str, Any]:
        """POST with retries; return the first choice of the response."""
        body: dict[str, Any] = {
            "model": self.settings.model,
            "temperature": self.settings.temperature,
        }
        body.update(extra)
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

        policy = self.retry_policy
        last_status: Optional[int] = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                resp = requests.post(self.url, headers=headers, json=body,
                                     timeout=self.settings.timeout_seconds)
            except requests.RequestException as e:
                last_status = None
                logger.warning("Chat backend attempt %d/%d failed: %s",
                               attempt, policy.max_attempts, e)
            else:
                if resp.status_code < 400:
                    try:
                        return resp.json()["choices"][0]
                    except (ValueError, KeyError, IndexError, TypeError) as e:
                        raise LLMResponseError(f"Malformed chat response: {e}") from e
                last_status = resp.status_code
                if not policy.is_retryable(resp.status_code):
                    logger.error("Chat backend rejected request (%s): %s",
                                 resp.status_code, resp.text[:200])
                    raise LLMTransportError(
                        f"Chat backend error {resp.status_code}", resp.status_code)
                logger.warning("Chat backend attempt %d/%d returned %s",
                               attempt, policy.max_attempts, resp.status_code)

            if attempt < policy.max_attempts:
                self._sleep(policy.delay_for(attempt))

        raise LLMTransportError(
            f"Chat backend failed after {policy.max_attempts} attempts", last_status)
