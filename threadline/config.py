"""
Config loader for threadline.
Reads config.yaml once at startup. All other modules import from here.
String values may reference environment variables as ${NAME}; .env is
loaded first so provider keys can live there.
"""

import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(os.environ.get("THREADLINE_CONFIG", Path(__file__).parent.parent / "config.yaml"))

_config: dict | None = None

DEFAULTS: dict = {
    "server": {"host": "0.0.0.0", "port": 8000},
    "logging": {"level": "INFO", "file": ""},
    "ai": {
        "default_model": "gpt-4-turbo",
        "temperature": 0.7,
        "max_tokens": 2000,
        "timeout": 120,
    },
    "providers": {
        "openai": {"api_key": "${OPENAI_API_KEY}"},
        "anthropic": {"api_key": "${ANTHROPIC_API_KEY}"},
        "google": {"api_key": "${GOOGLE_AI_API_KEY}"},
    },
    "context": {
        "max_messages": 50,
        "max_tokens": 8000,
        "min_retained": 2,
        "idle_minutes": 60,
        "sweep_interval_seconds": 300,
    },
    "storage": {"sqlite_path": "./data/threadline.db"},
    "conversation": {
        "system_prompt": (
            "You are a helpful AI assistant. Be concise, accurate, and helpful."
        ),
        "auto_title": True,
        "title_model": "gpt-3.5-turbo",
    },
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over DEFAULTS."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None
