"""
Configuration loader for the coffee order agent.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml


@dataclass
class WhatsAppConfig:
    api_url: str = "https://graph.facebook.com/v18.0"
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""                 # enables X-Hub-Signature-256 checks when set
    timeout_seconds: float = 30.0


@dataclass
class BackendConfig:
    type: str = "rest"                   # "rest" | "mock"
    base_url: str = ""
    api_key: str = ""                    # sent as X-API-Key
    timeout_seconds: float = 30.0


@dataclass
class LLMConfig:
    provider: str = "openai"             # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""


@dataclass
class SpeechConfig:
    api_key: str = ""
    transcription_model: str = "whisper-1"
    language: str = "en"
    tts_enabled: bool = True
    tts_model: str = "tts-1"
    default_voice: str = "alloy"
    temp_dir: str = "./temp"


@dataclass
class SessionConfig:
    idle_timeout_minutes: int = 30
    sweep_interval_seconds: int = 300


@dataclass
class Settings:
    app_name: str = "CoffeeOrderAgent"
    debug: bool = False
    log_level: str = "info"
    currency_symbol: str = "$"
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool) -> bool:
    # env substitution turns booleans into strings
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "COFFEE_AGENT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.log_level = raw.get("log_level") or settings.log_level
        settings.currency_symbol = raw.get("currency_symbol", settings.currency_symbol)

        if "whatsapp" in raw:
            wa = raw["whatsapp"] or {}
            settings.whatsapp = WhatsAppConfig(
                api_url=wa.get("api_url") or settings.whatsapp.api_url,
                phone_number_id=wa.get("phone_number_id", ""),
                access_token=wa.get("access_token", ""),
                verify_token=wa.get("verify_token", ""),
                app_secret=wa.get("app_secret", ""),
                timeout_seconds=float(wa.get("timeout_seconds", 30.0)),
            )

        if "backend" in raw:
            be = raw["backend"] or {}
            settings.backend = BackendConfig(
                type=be.get("type") or "rest",
                base_url=be.get("base_url", ""),
                api_key=be.get("api_key", ""),
                timeout_seconds=float(be.get("timeout_seconds", 30.0)),
            )

        if "llm" in raw:
            llm = raw["llm"] or {}
            settings.llm = LLMConfig(
                provider=llm.get("provider") or "openai",
                model=llm.get("model") or "gpt-4o-mini",
                temperature=float(llm.get("temperature", 0.7)),
                max_tokens=int(llm.get("max_tokens", 300)),
                api_key=llm.get("api_key", ""),
            )

        if "speech" in raw:
            sp = raw["speech"] or {}
            settings.speech = SpeechConfig(
                api_key=sp.get("api_key", ""),
                transcription_model=sp.get("transcription_model") or "whisper-1",
                language=sp.get("language") or "en",
                tts_enabled=_as_bool(sp.get("tts_enabled"), True),
                tts_model=sp.get("tts_model") or "tts-1",
                default_voice=sp.get("default_voice") or "alloy",
                temp_dir=sp.get("temp_dir") or "./temp",
            )

        if "session" in raw:
            se = raw["session"] or {}
            settings.session = SessionConfig(
                idle_timeout_minutes=int(se.get("idle_timeout_minutes", 30)),
                sweep_interval_seconds=int(se.get("sweep_interval_seconds", 300)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def configure_logging(level: str = "info"):
    """Set the structlog level filter for the whole process."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )
