"""
Tests for carerelay.decision_engine -- transcript composition and
decision extraction.
"""

from __future__ import annotations

import pytest

from carerelay.decision_engine import DecisionEngine, DecisionError
from carerelay.llm_client import LLMResponseError, LLMTransportError
from carerelay.models import DecisionResult, Message, MessageRole, ProfileRecord, Role

from conftest import ScriptedBackend


def _make_profiles() -> dict[Role, ProfileRecord]:
    return {
        Role.CAREGIVER: ProfileRecord(name="裕智の母", tone="やさしい敬語", hobby="園芸"),
        Role.SUBJECT: ProfileRecord(name="裕智", tone="冷静"),
    }


def _make_history() -> list[Message]:
    return [
        Message(role=MessageRole.USER, content="今朝めまいがしたの"),
    ]


class TestCompose:
    def test_system_instruction_comes_first(self):
        engine = DecisionEngine(ScriptedBackend(), "和架")
        history = _make_history()
        transcript = engine.compose(Role.CAREGIVER, _make_profiles(), history)

        assert transcript[0].role == MessageRole.SYSTEM
        assert transcript[1:] == history
        assert len(history) == 1

    def test_caregiver_instruction_embeds_profiles(self):
        engine = DecisionEngine(ScriptedBackend(), "和架")
        system = engine.compose(Role.CAREGIVER, _make_profiles(), [])[0].content

        assert "和架" in system
        assert "園芸" in system
        assert "裕智" in system

    def test_other_instruction_reveals_no_profiles(self):
        engine = DecisionEngine(ScriptedBackend(), "和架")
        system = engine.compose(Role.OTHER, _make_profiles(), [])[0].content

        assert "園芸" not in system
        assert "裕智" not in system


class TestDecide:
    def test_caregiver_gets_structured_decision(self):
        backend = ScriptedBackend()
        backend.decisions.append({"report_text": "Mother reports dizziness", "discuss": True})
        engine = DecisionEngine(backend, "和架")

        result = engine.decide(engine.compose(Role.CAREGIVER, _make_profiles(), _make_history()), Role.CAREGIVER)

        assert result == DecisionResult(report_text="Mother reports dizziness", discuss=True)
        kind, payload = backend.calls[0]
        assert kind == "structured_decision"
        assert payload[0]["role"] == "system"
        assert payload[-1] == {"role": "user", "content": "今朝めまいがしたの"}

    @pytest.mark.parametrize("role", [Role.SUBJECT, Role.OTHER])
    def test_other_roles_get_free_form_reply(self, role):
        backend = ScriptedBackend()
        backend.completions.append("こんにちは")
        engine = DecisionEngine(backend, "和架")

        result = engine.decide(engine.compose(role, _make_profiles(), _make_history()), role)

        assert result == "こんにちは"
        assert [kind for kind, _ in backend.calls] == ["complete"]

    @pytest.mark.parametrize("error", [
        LLMTransportError("down", 503),
        LLMResponseError("no call"),
    ])
    def test_backend_failure_is_decision_error(self, error):
        backend = ScriptedBackend()
        backend.decisions.append(error)
        engine = DecisionEngine(backend, "和架")
        with pytest.raises(DecisionError):
            engine.decide(engine.compose(Role.CAREGIVER, _make_profiles(), []), Role.CAREGIVER)

    @pytest.mark.parametrize("raw", [
        {"discuss": True},
        {"report_text": "x"},
        {"report_text": "x", "discuss": "sometimes"},
    ])
    def test_schema_violation_is_decision_error(self, raw):
        backend = ScriptedBackend()
        backend.decisions.append(raw)
        engine = DecisionEngine(backend, "和架")
        with pytest.raises(DecisionError):
            engine.decide(engine.compose(Role.CAREGIVER, _make_profiles(), []), Role.CAREGIVER)

    def test_completion_failure_is_decision_error(self):
        backend = ScriptedBackend()
        backend.completions.append(LLMTransportError("down"))
        engine = DecisionEngine(backend, "和架")
        with pytest.raises(DecisionError):
            engine.decide(engine.compose(Role.SUBJECT, _make_profiles(), []), Role.SUBJECT)


class TestSummarize:
    def test_window_is_sent_as_one_user_message(self):
        backend = ScriptedBackend()
        backend.completions.append("めまいがあったそうです。")
        engine = DecisionEngine(backend, "和架")
        window = [
            Message(role=MessageRole.USER, content="めまいがしたの"),
            Message(role=MessageRole.ASSISTANT, content="大丈夫ですか"),
        ]

        summary = engine.summarize(_make_profiles()[Role.CAREGIVER], window)

        assert summary == "めまいがあったそうです。"
        _, payload = backend.calls[0]
        assert payload[0]["role"] == "system"
        assert payload[1] == {"role": "user", "content": "user: めまいがしたの\nassistant: 大丈夫ですか"}
