from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any, Mapping

from sheet_assist.errors import ConfigurationError

DEFAULT_PROVIDER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_PROVIDER_TIMEOUT = 60.0
DEFAULT_BRIDGE_TIMEOUT = 30.0
DEFAULT_REFERER = "https://ai-sheets-helper.vercel.app"
DEFAULT_TITLE = "AI Sheets Helper"

FIX_TABLE_MAX_TOKENS = 2000
CREATE_FORMULA_MAX_TOKENS = 1000


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


@dataclass(frozen=True)
class Settings:
    api_key: str | None = None
    provider_url: str = DEFAULT_PROVIDER_URL
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT
    api_url: str | None = None
    bridge_timeout: float = DEFAULT_BRIDGE_TIMEOUT
    referer: str = DEFAULT_REFERER
    title: str = DEFAULT_TITLE

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            api_key=(env.get("OPENROUTER_API_KEY") or "").strip() or None,
            provider_url=env.get("SHEET_ASSIST_PROVIDER_URL") or DEFAULT_PROVIDER_URL,
            model=env.get("SHEET_ASSIST_MODEL") or DEFAULT_MODEL,
            temperature=_float_setting(env, "SHEET_ASSIST_TEMPERATURE", DEFAULT_TEMPERATURE),
            provider_timeout=_float_setting(env, "SHEET_ASSIST_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT),
            api_url=(env.get("SHEET_ASSIST_API_URL") or "").rstrip("/") or None,
            bridge_timeout=_float_setting(env, "SHEET_ASSIST_BRIDGE_TIMEOUT", DEFAULT_BRIDGE_TIMEOUT),
            referer=env.get("SHEET_ASSIST_REFERER") or DEFAULT_REFERER,
            title=env.get("SHEET_ASSIST_TITLE") or DEFAULT_TITLE,
        )

    def require_api_key(self) -> str:
        # Checked per request so the API can start without a key.
        if not self.api_key:
            raise ConfigurationError("API key not configured")
        return self.api_key

    def describe(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.api_key:
            payload["api_key"] = self.api_key[:4] + "..." + self.api_key[-4:] if len(self.api_key) > 12 else "***"
        return payload
