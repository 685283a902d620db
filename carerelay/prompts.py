"""
System-instruction templates for each participant role.

Profiles are embedded as JSON so that any extra attribute set through the
profile override command reaches the model without template changes.
"""

from __future__ import annotations

import json

from carerelay.models import ProfileRecord, Role

DECISION_FUNCTION_NAME = "decide_report"

DECISION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "report_text": {
            "type": "string",
            "description": (
                "What the Subject should be told about this conversation. "
                "Empty string when nothing is worth reporting."
            ),
        },
        "discuss": {
            "type": "boolean",
            "description": (
                "True when the report must be confirmed by the Subject before "
                "anything is sent back to the Caregiver."
            ),
        },
        "reply": {
            "type": "string",
            "description": "Your conversational reply to the Caregiver.",
        },
    },
    "required": ["report_text", "discuss"],
}


def _profile_json(profile: ProfileRecord) -> str:
    return json.dumps(profile.as_prompt_dict(), ensure_ascii=False)


def caregiver_instruction(
    assistant_name: str, caregiver: ProfileRecord, subject: ProfileRecord
) -> str:
    name = subject.name
    return (
        f"あなたは「{assistant_name}」というAI仲介者です。\n"
        f"このユーザーは{name}さんのお母様（本人確認不要）です。\n"
        f"話し方: {caregiver.tone}\n"
        f"会話の内容から、{name}さんに伝えるべきことがあれば report_text に簡潔にまとめてください。"
        "伝えるべきことがなければ report_text は空文字にしてください。\n"
        f"健康や安全、お金に関わる内容など、伝える前に{name}さんと相談すべき場合は discuss を true にしてください。\n"
        "reply にはお母様への返答を書いてください。\n"
        f"母プロフィール:\n{_profile_json(caregiver)}\n"
        f"{name}プロフィール:\n{_profile_json(subject)}\n"
    )


def subject_instruction(assistant_name: str, subject: ProfileRecord) -> str:
    return (
        f"あなたは「{assistant_name}」というAI仲介者です。\n"
        f"現在、開発者（{subject.name}）と会話しています。\n"
        f"話し方: {subject.tone}\n"
        f"開発者プロフィール:\n{_profile_json(subject)}\n"
    )


def other_instruction(assistant_name: str) -> str:
    return (
        f"あなたは「{assistant_name}」というAI仲介者です。\n"
        "丁寧な敬語で簡潔に答えてください。"
        "他の利用者の情報は一切伝えないでください。\n"
    )


def digest_instruction(caregiver: ProfileRecord) -> str:
    return (
        f"以下は{caregiver.name}とAI仲介者の最近の会話です。\n"
        "体調・気分・予定・困りごとを中心に、3行以内で要約してください。\n"
    )


def instruction_for(
    role: Role,
    assistant_name: str,
    caregiver: ProfileRecord,
    subject: ProfileRecord,
) -> str:
    """Pick the system instruction for ``role``."""
    if role == Role.CAREGIVER:
        return caregiver_instruction(assistant_name, caregiver, subject)
    if role == Role.SUBJECT:
        return subject_instruction(assistant_name, subject)
    return other_instruction(assistant_name)
