"""
Configuration — environment, .env and optional YAML file
========================================================
Precedence (highest first): YAML file keys, environment variables, defaults.
The .env file is loaded with python-dotenv before the environment is read.

Environment variables:
    LOG_LEVEL                  default INFO
    DEFAULT_MODEL              default gemini-2.5-flash
    FALLBACK_MODEL             default gpt-4o-mini
    WEB_SEARCH_ENABLED         default true
    SEARCH_TIMEOUT             tool timeout in milliseconds, default 15000
    REASONER_MAX_STEPS         executor step bound per plan, default 50
    REASONER_MAX_CHECKPOINTS   checkpoint ring size, default 10
    REASONER_CHECKPOINT_DB     SQLite path for the checkpoint log (unset → off)
    REASONER_TRACING           enable OpenTelemetry spans, default false
    OTLP_ENDPOINT              OTLP gRPC collector (unset → console exporter)

YAML schema (every key optional, same names as the ReasonerConfig fields):

    log_level: DEBUG
    default_model: gemini-2.5-flash
    fallback_model: claude-3-5-haiku-latest
    web_search_enabled: false
    search_timeout_ms: 8000
    max_steps: 30
    max_checkpoints: 10
    checkpoint_db: ./reasoner_checkpoints.db
    tracing: true
    otlp_endpoint: http://localhost:4317
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class ReasonerConfig:
    log_level: str = "INFO"
    default_model: str = "gemini-2.5-flash"
    fallback_model: Optional[str] = "gpt-4o-mini"
    web_search_enabled: bool = True
    search_timeout_ms: int = 15000
    max_steps: int = 50
    max_checkpoints: int = 10
    checkpoint_db: Optional[str] = None
    tracing: bool = False
    otlp_endpoint: Optional[str] = None

    @property
    def search_timeout_seconds(self) -> float:
        return self.search_timeout_ms / 1000.0

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)


# env var → (field, parser name)
_ENV_MAP: dict[str, tuple[str, str]] = {
    "LOG_LEVEL":                ("log_level", "level"),
    "DEFAULT_MODEL":            ("default_model", "str"),
    "FALLBACK_MODEL":           ("fallback_model", "str"),
    "WEB_SEARCH_ENABLED":       ("web_search_enabled", "bool"),
    "SEARCH_TIMEOUT":           ("search_timeout_ms", "int"),
    "REASONER_MAX_STEPS":       ("max_steps", "int"),
    "REASONER_MAX_CHECKPOINTS": ("max_checkpoints", "int"),
    "REASONER_CHECKPOINT_DB":   ("checkpoint_db", "str"),
    "REASONER_TRACING":         ("tracing", "bool"),
    "OTLP_ENDPOINT":            ("otlp_endpoint", "str"),
}

_FIELD_KINDS: dict[str, str] = {f: kind for f, kind in _ENV_MAP.values()}


def _parse(key: str, kind: str, value: Any) -> Any:
    if kind == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"{key}: expected a boolean, got {value!r}")
    if kind == "int":
        if isinstance(value, bool):
            raise ValueError(f"{key}: expected an integer, got {value!r}")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key}: expected an integer, got {value!r}")
        if number <= 0:
            raise ValueError(f"{key}: must be positive, got {number}")
        return number
    if kind == "level":
        level = str(value).strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"{key}: unknown log level {value!r}. Valid values: {list(_LOG_LEVELS)}")
        return level
    text = str(value).strip() if value is not None else ""
    return text or None


def config_from_env(environ: Optional[Mapping[str, str]] = None,
                    base: Optional[ReasonerConfig] = None) -> ReasonerConfig:
    environ = os.environ if environ is None else environ
    cfg = base or ReasonerConfig()
    updates: dict[str, Any] = {}
    for var, (field_name, kind) in _ENV_MAP.items():
        if var in environ:
            updates[field_name] = _parse(var, kind, environ[var])
    if updates.get("default_model", "") is None:
        raise ValueError("DEFAULT_MODEL: must not be empty")
    return dataclasses.replace(cfg, **updates)


def config_from_yaml(path: str | Path,
                     base: Optional[ReasonerConfig] = None) -> ReasonerConfig:
    """
    Overlay a YAML file on ``base``.

    Raises
    ------
    FileNotFoundError  — file doesn't exist
    ValueError         — unknown keys or invalid values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{path}': expected a mapping at the top level")

    updates: dict[str, Any] = {}
    for key, value in raw.items():
        kind = _FIELD_KINDS.get(key)
        if kind is None:
            raise ValueError(
                f"'{path}': unknown config key '{key}'. Valid keys: {sorted(_FIELD_KINDS)}"
            )
        updates[key] = _parse(f"'{path}': {key}", kind, value)
    if "default_model" in updates and updates["default_model"] is None:
        raise ValueError(f"'{path}': default_model must not be empty")
    return dataclasses.replace(base or ReasonerConfig(), **updates)


def load_config(path: Optional[str | Path] = None,
                dotenv: bool = True) -> ReasonerConfig:
    """Defaults ← environment (after .env) ← YAML file at ``path``."""
    if dotenv:
        load_dotenv(override=True)
    cfg = config_from_env()
    if path is not None:
        cfg = config_from_yaml(path, cfg)
    return cfg
