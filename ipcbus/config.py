import os
from pathlib import Path

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings

ENV_PREFIX = "IPCBUS_"
DEFAULT_CONFIG_PATH = "/etc/ipcbus/ipcbus.yml"


class Settings(BaseSettings):
    # Socket paths
    listen_path: str = "/run/ipcbus/service.sock"
    peer_path: str = "/run/ipcbus/peer.sock"
    socket_mode: int = 0o666  # any local user may connect

    # Worker pool
    max_workers: int = 30
    queue_size: int = 128
    drain_timeout: float = 5.0

    # Framing
    max_message_size: int = 16 * 1024 * 1024

    # Timeouts (None = wait indefinitely)
    read_timeout: float | None = None
    write_timeout: float | None = None
    client_timeout: float | None = None

    log_level: str = "INFO"

    model_config = {"env_prefix": ENV_PREFIX}

    @field_validator("socket_mode", mode="before")
    @classmethod
    def parse_octal_mode(cls, v):
        # "666", "0666" and "0o666" all mean an octal permission mask
        if isinstance(v, str):
            return int(v.strip().removeprefix("0o"), 8)
        return v

    @field_validator("socket_mode")
    @classmethod
    def check_mode_range(cls, v: int) -> int:
        if not 0 <= v <= 0o777:
            raise ValueError(f"socket_mode {v:#o} is outside 0..0o777")
        return v


def load_settings(path: str | None = None) -> Settings:
    """Load settings from a YAML file; IPCBUS_* env vars take precedence."""
    config_path = path or os.environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH)
    data = {}
    p = Path(config_path)
    if p.exists():
        text = p.read_text()
        data = yaml.safe_load(text) or {}
        if "socket_mode" in data:
            data["socket_mode"] = _raw_scalar(text, "socket_mode")

    # pydantic-settings matches env names case-insensitively, so must we
    env_keys = {key.upper() for key in os.environ}
    overrides = {
        key: val
        for key, val in data.items()
        if key in Settings.model_fields
        and f"{ENV_PREFIX}{key.upper()}" not in env_keys
    }
    return Settings(**overrides)


def _raw_scalar(text: str, key: str):
    """Return the source text of a top-level scalar, before YAML typing.

    YAML reads ``socket_mode: 666`` as decimal 666 and ``0o666`` as a string;
    the raw text lets the octal parser treat every spelling alike.
    """
    root = yaml.compose(text, Loader=yaml.SafeLoader)
    for key_node, value_node in root.value:
        if key_node.value == key and isinstance(value_node, yaml.ScalarNode):
            return value_node.value
    return None
