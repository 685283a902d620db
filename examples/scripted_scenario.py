"""
Scripted Scenario: Held Relay, Confirmation, and Digest
=======================================================

Walks the mediation engine through one day of conversation with a scripted
language-model backend and a console messenger.  Nothing leaves the
process: no LINE channel and no model endpoint are contacted.

Steps demonstrated:
  1. Build the router from an inline configuration
  2. Caregiver small talk (nothing to report)
  3. Caregiver mentions a symptom; a proposal is held for the Subject
  4. Subject confirms; the text is relayed to the Caregiver
  5. Subject requests a digest of the Caregiver's conversation
  6. Subject overrides a profile field
  7. Audit log export

Usage:
    python examples/scripted_scenario.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carerelay.audit import AuditLog
from carerelay.config import MediationConfig
from carerelay.logging_utils import configure_logging
from carerelay.models import InboundEvent
from carerelay.router import build_router

CAREGIVER = "U-caregiver-demo"
SUBJECT = "U-subject-demo"


class ConsoleMessenger:
    """Prints every outbound message instead of delivering it."""

    def reply(self, reply_token: str, text: str) -> None:
        print(f"  [reply -> {reply_token}]\n    " + text.replace("\n", "\n    "))

    def push(self, participant_id: str, text: str) -> None:
        print(f"  [push -> {participant_id}]\n    " + text.replace("\n", "\n    "))


class ScriptedBackend:
    """Returns canned decisions keyed on the latest user message."""

    def complete(self, messages: list[dict[str, str]]) -> str:
        if messages[0]["content"].startswith("以下は"):
            return "朝にめまいがあったとのことです。その後は落ち着いています。"
        return "承知しました。"

    def structured_decision(self, name, schema, messages):
        latest = messages[-1]["content"]
        if "めまい" in latest:
            return {
                "report_text": "お母様が朝にめまいを感じたそうです。",
                "discuss": True,
                "reply": "それは心配ですね。無理をせず休んでくださいね。",
            }
        return {"report_text": "", "discuss": False, "reply": "いいお天気ですね。"}


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _send(router, sender: str, text: str) -> None:
    print(f"{sender}: {text}")
    outcome = router.handle_event(
        InboundEvent(sender_id=sender, text=text, reply_token=f"rt-{len(text)}")
    )
    print(f"  => {outcome.command.value}: {outcome.action}\n")


def main() -> None:
    configure_logging("WARNING")

    _banner("Step 1: Build Router")
    config = MediationConfig(caregiver_id=CAREGIVER, subject_id=SUBJECT)
    audit_log = AuditLog()
    router = build_router(
        config, messenger=ConsoleMessenger(), backend=ScriptedBackend(), audit_log=audit_log
    )
    print(f"Caregiver: {config.caregiver_id}  Subject: {config.subject_id}")
    print(f"Confirmation keyword: {config.confirmation_keyword}")

    _banner("Step 2: Small Talk (Nothing to Report)")
    _send(router, CAREGIVER, "今日は晴れていますね")

    _banner("Step 3: Symptom Mentioned (Proposal Held)")
    _send(router, CAREGIVER, "今朝ちょっとめまいがしたの")

    _banner("Step 4: Subject Confirms")
    _send(router, SUBJECT, config.confirmation_keyword)
    _send(router, SUBJECT, config.confirmation_keyword)

    _banner("Step 5: Digest")
    _send(router, SUBJECT, config.digest_keyword)

    _banner("Step 6: Profile Override")
    _send(router, SUBJECT, config.caregiver_profile_prefix + ' {"hobby": "園芸"}')
    _send(router, SUBJECT, config.caregiver_profile_prefix + " {not json")

    _banner("Step 7: Audit Export")
    export = audit_log.export_for_review()
    print(json.dumps(export["export_metadata"], indent=2))
    for entry in export["entries"]:
        print(f"  {entry['event_type']}: {entry['metadata']}")


if __name__ == "__main__":
    main()
