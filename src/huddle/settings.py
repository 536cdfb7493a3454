"""SettingsManager: workspace ``settings.json`` with context-budget and model settings."""

from __future__ import annotations

import json
import os
from typing import Any

from huddle import log

SETTINGS_FILENAME = "settings.json"

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-sonnet-4-5"

_DEFAULT_CONTEXT = {
    "maxInputTokens": 200000,
    "reserveTokens": 16384,
}


class SettingsManager:
    """Stores settings in ``settings.json`` inside *workspace_dir*.

    A missing or unreadable file yields defaults; writes happen on every set.
    """

    def __init__(self, workspace_dir: str) -> None:
        self._settings_path = os.path.join(workspace_dir, SETTINGS_FILENAME)
        self._settings: dict[str, Any] = self._load()

    # ── Private persistence ──────────────────────────────────────────

    def _load(self) -> dict[str, Any]:
        if not os.path.exists(self._settings_path):
            return {}
        try:
            with open(self._settings_path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            log.log_warning("Could not read settings file, using defaults", str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        try:
            d = os.path.dirname(self._settings_path)
            if d:
                os.makedirs(d, exist_ok=True)
            with open(self._settings_path, "w", encoding="utf-8") as fh:
                json.dump(self._settings, fh, indent=2)
        except OSError as exc:
            log.log_warning("Could not save settings file", str(exc))

    # ── Context budget ───────────────────────────────────────────────

    def get_context_settings(self) -> dict[str, Any]:
        return {**_DEFAULT_CONTEXT, **(self._settings.get("context") or {})}

    def get_max_input_tokens(self) -> int:
        return int(self.get_context_settings()["maxInputTokens"])

    def get_reserve_tokens(self) -> int:
        return int(self.get_context_settings()["reserveTokens"])

    def set_context_limits(self, max_input_tokens: int, reserve_tokens: int) -> None:
        ctx = self._settings.setdefault("context", {})
        ctx["maxInputTokens"] = max_input_tokens
        ctx["reserveTokens"] = reserve_tokens
        self._save()

    # ── Model / Provider ─────────────────────────────────────────────

    def get_default_model(self) -> str:
        return self._settings.get("defaultModel") or DEFAULT_MODEL

    def get_default_provider(self) -> str:
        return self._settings.get("defaultProvider") or DEFAULT_PROVIDER

    def set_default_model_and_provider(self, provider: str, model_id: str) -> None:
        self._settings["defaultProvider"] = provider
        self._settings["defaultModel"] = model_id
        self._save()
