"""Configuration management for attestchat."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger("attestchat.config")

APP_DIR_NAME = ".attestchat"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "ATTESTCHAT_"

DEFAULT_CONFIG: dict[str, Any] = {
    "ollama_url": "http://127.0.0.1:11434",
    "ollama_model": "qwen3:14b",
    "ollama_timeout": 300.0,
    "ollama_num_ctx": 32768,
    "ollama_temperature": 0.2,
    "ollama_num_predict": 2048,
    "ollama_keep_alive": "30m",
    "proxy_host": "127.0.0.1",
    "proxy_port": 3000,
    "tool_server_command": "keylime-mcp-server",
    "tool_server_args": [],
    "tool_server_timeout": 60.0,
    "agent_max_turns": 5,
    "agent_system_prompt": "",
    "event_buffer_size": 100,
    "event_keepalive_interval": 30.0,
    "log_file": "log/attestchat.log",
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.attestchat/config.json."""

    # Ollama
    ollama_url: str
    ollama_model: str
    ollama_timeout: float
    ollama_num_ctx: int
    ollama_temperature: float
    ollama_num_predict: int
    ollama_keep_alive: str

    # Web server
    proxy_host: str
    proxy_port: int

    # Tool server subprocess
    tool_server_command: str
    tool_server_args: tuple[str, ...]
    tool_server_timeout: float

    # Agent loop controls
    agent_max_turns: int
    agent_system_prompt: str

    # Event streaming
    event_buffer_size: int
    event_keepalive_interval: float

    # Logging
    log_file: str

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from the given path or the default ~/.attestchat/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            config_dir.mkdir(parents=True, exist_ok=True)

        current = dict(DEFAULT_CONFIG)

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    user_config = json.load(f)
                unknown = set(user_config) - set(DEFAULT_CONFIG)
                if unknown:
                    logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
                current.update({k: v for k, v in user_config.items() if k in DEFAULT_CONFIG})
            except (OSError, json.JSONDecodeError, AttributeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}; using defaults")
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}; using defaults")

        current.update(env_overrides(os.environ))
        current["tool_server_args"] = tuple(str(a) for a in current["tool_server_args"] or ())
        return cls(**current)

    def with_overrides(self, **overrides: Any) -> Config:
        values = {k: getattr(self, k) for k in DEFAULT_CONFIG}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return Config(**values)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ATTESTCHAT_<KEY> overrides, coerced to the default value's type."""
    overrides: dict[str, Any] = {}
    for key, default_val in DEFAULT_CONFIG.items():
        env_key = f"{ENV_PREFIX}{key.upper()}"
        if env_key not in environ:
            continue
        val = environ[env_key]
        if isinstance(default_val, bool):
            overrides[key] = val.lower() in ("true", "1", "yes")
        elif isinstance(default_val, int):
            try:
                overrides[key] = int(val)
            except ValueError:
                logger.warning(f"Ignoring {env_key}={val!r}: not an integer")
        elif isinstance(default_val, float):
            try:
                overrides[key] = float(val)
            except ValueError:
                logger.warning(f"Ignoring {env_key}={val!r}: not a number")
        elif isinstance(default_val, list):
            overrides[key] = val.split()
        else:
            overrides[key] = val
    return overrides
