"""
Outbound messaging -- replies bound to an inbound event, and unsolicited
pushes addressed to a participant.

``Messenger`` is the seam the router and the approval coordinator depend
on.  ``LineMessagingClient`` implements it against the LINE Messaging API.
Any delivery failure surfaces as ``TransportError`` and is not retried here.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

LINE_API_BASE = "https://api.line.me/v2/bot"


class TransportError(Exception):
    """Raised when an outbound delivery or a backing service fails."""
    pass


class Messenger(Protocol):
    """Outbound delivery channel."""

    def reply(self, reply_token: str, text: str) -> None:
        """Answer the inbound event that issued ``reply_token``."""
        ...

    def push(self, participant_id: str, text: str) -> None:
        """Send ``text`` to ``participant_id`` without a triggering event."""
        ...


class LineMessagingClient:
    """LINE Messaging API client for text replies and pushes."""

    def __init__(
        self,
        channel_access_token: str,
        api_base: str = LINE_API_BASE,
        timeout: float = 10.0,
    ) -> None:
        if not channel_access_token:
            raise ValueError("A LINE channel access token is required.")
        self._token = channel_access_token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def reply(self, reply_token: str, text: str) -> None:
        if not reply_token:
            raise TransportError("Cannot reply without a reply token.")
        self._post("/message/reply", {
            "replyToken": reply_token,
            "messages": [{"type": "text", "text": text}],
        })

    def push(self, participant_id: str, text: str) -> None:
        self._post("/message/push", {
            "to": participant_id,
            "messages": [{"type": "text", "text": text}],
        })

    def _post(self, path: str, body: dict) -> None:
        url = f"{self._api_base}{path}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.post(url, headers=headers, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.error("LINE request to %s failed: %s", path, exc)
            raise TransportError(f"LINE request to {path} failed") from exc
        if resp.status_code >= 400:
            logger.error("LINE %s returned %s: %s", path, resp.status_code, resp.text)
            raise TransportError(f"LINE {path} returned HTTP {resp.status_code}")
        logger.debug("LINE %s delivered", path)
