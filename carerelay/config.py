"""
Mediation Configuration -- Participants, Keywords, and Backend Settings.

Everything a deployment needs to change lives in ``MediationConfig``: the two
distinguished participant ids, the keywords and command prefixes the router
recognizes, the localized strings participants see, the conversation token
budget, and the language-model endpoint with its retry policy.

Configuration is loaded from YAML and then overlaid with environment
variables for secrets and per-deployment ids.  Every value is validated
through pydantic before the router is built.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class RetryPolicy(BaseModel):
    """Bounded exponential-backoff policy for language-model calls.

    Only rate-limit and server-class statuses are retried.  Client-class
    failures (bad request, auth) fail on the first attempt.
    """

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    retryable_statuses: list[int] = Field(
        default_factory=lambda: [429, 500, 502, 503, 504],
    )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based failed attempt."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    def is_retryable(self, status_code: Optional[int]) -> bool:
        """``None`` means the request never produced a response."""
        if status_code is None:
            return True
        return status_code in self.retryable_statuses


# ---------------------------------------------------------------------------
# Participant-facing strings
# ---------------------------------------------------------------------------

class ProfileDefaults(BaseModel):
    """Initial profile values written on first interaction."""

    caregiver: dict[str, str] = Field(
        default_factory=lambda: {"name": "裕智の母", "tone": "やさしい敬語"},
    )
    subject: dict[str, str] = Field(
        default_factory=lambda: {"name": "裕智", "tone": "冷静で思いやりある敬語"},
    )

    @field_validator("caregiver", "subject")
    @classmethod
    def requires_name(cls, v: dict[str, str]) -> dict[str, str]:
        if not v.get("name"):
            raise ValueError("profile defaults must include a non-empty 'name'")
        return v


class MediationMessages(BaseModel):
    """Localized strings sent to participants.

    Raw error detail is never sent; failures resolve to one of these.
    """

    apology: str = "申し訳ありません。ただいま応答できませんでした。少し時間をおいてもう一度お試しください。"
    profile_updated: str = "プロフィールを更新しました ✅"
    profile_invalid: str = "JSON が不正です ❌"
    relay_confirmed: str = "お母様にお伝えしました。"
    relay_cancelled: str = "報告案を取り消しました。"
    caregiver_ack: str = "お話しいただきありがとうございます。"
    auto_report_header: str = "【和架から自動報告】"
    proposal_header: str = "【報告案】"
    proposal_instructions: str = "そのまま送る場合は「{keyword}」と返信してください。"
    proposal_cancel_hint: str = "取り消す場合は「{keyword}」と返信してください。"
    digest_header: str = "【最近の会話】"
    digest_summary_header: str = "【要約】"
    digest_empty: str = "まだ会話の記録がありません。"


# ---------------------------------------------------------------------------
# Language-model backend
# ---------------------------------------------------------------------------

class LLMSettings(BaseModel):
    """Endpoint and credentials for an OpenAI-compatible chat backend."""

    api_base: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    api_key: str = ""
    timeout_seconds: float = Field(default=60.0, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------

class MediationConfig(BaseModel):
    """Complete configuration for one Caregiver/Subject pair."""

    caregiver_id: str = Field(..., min_length=1)
    subject_id: str = Field(..., min_length=1)
    assistant_name: str = "和架（Waka）"

    confirmation_keyword: str = Field(default="はい", min_length=1)
    cancel_keyword: Optional[str] = "キャンセル"
    caregiver_profile_prefix: str = Field(default="@setMotherProfile", min_length=1)
    subject_profile_prefix: str = Field(default="@setYutoProfile", min_length=1)
    digest_keyword: str = Field(default="@digest", min_length=1)
    digest_patterns: list[str] = Field(
        default_factory=lambda: [r"(母|お母様).*(様子|近況|要約)"],
    )

    history_token_budget: int = Field(default=4000, gt=0)
    digest_window: int = Field(default=20, gt=0)
    pending_relay_ttl_seconds: Optional[int] = Field(default=None, gt=0)
    max_workers: int = Field(default=8, ge=1)

    profile_defaults: ProfileDefaults = Field(default_factory=ProfileDefaults)
    messages: MediationMessages = Field(default_factory=MediationMessages)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    line_channel_access_token: str = ""

    @field_validator("digest_patterns")
    @classmethod
    def patterns_compile(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid digest pattern {pattern!r}: {exc}") from exc
        return v

    @model_validator(mode="after")
    def participants_distinct(self) -> "MediationConfig":
        if self.caregiver_id == self.subject_id:
            raise ValueError("caregiver_id and subject_id must differ")
        if self.cancel_keyword is not None and (
            self.cancel_keyword.strip().lower() == self.confirmation_keyword.strip().lower()
        ):
            raise ValueError("cancel_keyword must differ from confirmation_keyword")
        return self

    @property
    def pair_key(self) -> str:
        """Storage key of the pending-relay slot for this pair."""
        return f"{self.caregiver_id}:{self.subject_id}"


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "OPENAI_API_KEY": ("llm", "api_key"),
    "OPENAI_MODEL": ("llm", "model"),
    "OPENAI_API_BASE": ("llm", "api_base"),
    "LINE_CHANNEL_ACCESS_TOKEN": ("line_channel_access_token",),
    "CARERELAY_CAREGIVER_ID": ("caregiver_id",),
    "CARERELAY_SUBJECT_ID": ("subject_id",),
}


def apply_env_overrides(
    raw: dict, environ: Optional[Mapping[str, str]] = None
) -> dict:
    """Overlay environment variables onto a raw configuration mapping.

    Args:
        raw: Mapping as read from YAML (not yet validated).
        environ: Environment to read; defaults to ``os.environ``.

    Returns:
        A new mapping with every set variable applied.
    """
    environ = os.environ if environ is None else environ
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for var, path in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        target = merged
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return merged


def load_config_from_yaml(
    path: str | Path, environ: Optional[Mapping[str, str]] = None
) -> MediationConfig:
    """Load and validate configuration from a YAML file.

    Example YAML structure::

        mediation:
          caregiver_id: "U-caregiver"
          subject_id: "U-subject"
          history_token_budget: 4000
          llm:
            model: "gpt-4o"
            retry:
              max_attempts: 3

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "mediation" not in raw:
        raise ValueError("YAML file must contain a top-level 'mediation' mapping.")
    section = raw["mediation"]
    if not isinstance(section, dict):
        raise ValueError("'mediation' must be a mapping.")

    return MediationConfig(**apply_env_overrides(section, environ))
