"""Global settings for sandchat.

Settings live in <home>/settings.yaml. Environment variables override
selected keys (assistant name, log level, concurrency, idle timeout,
shutdown cursor policy) after the YAML is read.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml  # type: ignore
from pydantic import BaseModel, ConfigDict, Field

from ..paths import ensure_home
from ..util.conv import coerce_bool, coerce_float, coerce_int
from ..util.fs import atomic_write_text


SandboxRuntime = Literal["docker", "local"]


class SandboxSettings(BaseModel):
    runtime: SandboxRuntime = "docker"
    image: str = "sandchat-agent:latest"
    command: List[str] = Field(default_factory=list)  # argv for runtime=local
    name_prefix: str = "sandchat-"
    timeout_seconds: float = 1800.0
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class TelegramSettings(BaseModel):
    token: str = ""
    token_env: str = "TELEGRAM_BOT_TOKEN"

    model_config = ConfigDict(extra="ignore")


class SlackSettings(BaseModel):
    bot_token: str = ""
    bot_token_env: str = "SLACK_BOT_TOKEN"
    app_token: str = ""
    app_token_env: str = "SLACK_APP_TOKEN"

    model_config = ConfigDict(extra="ignore")


class DiscordSettings(BaseModel):
    token: str = ""
    token_env: str = "DISCORD_BOT_TOKEN"

    model_config = ConfigDict(extra="ignore")


class ChannelSettings(BaseModel):
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    slack: SlackSettings = Field(default_factory=SlackSettings)
    discord: DiscordSettings = Field(default_factory=DiscordSettings)

    model_config = ConfigDict(extra="ignore")


class Settings(BaseModel):
    assistant_name: str = "Andy"
    main_folder: str = "main"
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    command_poll_interval_seconds: float = Field(default=1.0, gt=0)
    idle_timeout_seconds: float = Field(default=1800.0, gt=0)
    typing_refresh_seconds: float = Field(default=4.0, gt=0)
    max_concurrent_sandboxes: int = Field(default=5, ge=1)
    max_retries: int = Field(default=5, ge=0)
    retry_base_seconds: float = Field(default=5.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)
    shutdown_advance_cursors: bool = False
    timezone: str = "UTC"
    log_level: str = "INFO"
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)

    model_config = ConfigDict(extra="ignore")

    @property
    def trigger_pattern(self) -> "re.Pattern[str]":
        return re.compile(rf"^@{re.escape(self.assistant_name)}\b", re.IGNORECASE)

    def telegram_token(self) -> str:
        t = self.channels.telegram
        return t.token or os.environ.get(t.token_env, "").strip()

    def slack_tokens(self) -> tuple[str, str]:
        s = self.channels.slack
        bot = s.bot_token or os.environ.get(s.bot_token_env, "").strip()
        app = s.app_token or os.environ.get(s.app_token_env, "").strip()
        return bot, app

    def discord_token(self) -> str:
        d = self.channels.discord
        return d.token or os.environ.get(d.token_env, "").strip()


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings_doc() -> Dict[str, Any]:
    """Load the raw settings.yaml document ({} when missing or unreadable)."""
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        return {}


def save_settings_doc(doc: Dict[str, Any]) -> None:
    atomic_write_text(_settings_path(), yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))


def _apply_env(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    name = os.environ.get("SANDCHAT_ASSISTANT_NAME", "").strip()
    if name:
        out["assistant_name"] = name
    level = os.environ.get("SANDCHAT_LOG_LEVEL", "").strip()
    if level:
        out["log_level"] = level
    raw = os.environ.get("SANDCHAT_MAX_CONCURRENT")
    if raw:
        out["max_concurrent_sandboxes"] = coerce_int(raw, default=out.get("max_concurrent_sandboxes", 5), minimum=1)
    raw = os.environ.get("SANDCHAT_IDLE_TIMEOUT")
    if raw:
        out["idle_timeout_seconds"] = coerce_float(raw, default=out.get("idle_timeout_seconds", 1800.0), minimum=1.0)
    raw = os.environ.get("SANDCHAT_SHUTDOWN_ADVANCE_CURSORS")
    if raw:
        out["shutdown_advance_cursors"] = coerce_bool(raw, default=bool(out.get("shutdown_advance_cursors", False)))
    return out


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    doc = _apply_env(load_settings_doc())
    if overrides:
        doc.update(overrides)
    return Settings.model_validate(doc)
