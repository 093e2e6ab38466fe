"""Configuration: Pydantic models for broker settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


def _default_cwd() -> str:
    return os.environ.get("HOME") or "/home"


class BrokerConfig(BaseModel):
    """Top-level ptybroker configuration.

    Capacity limits are fixed for the lifetime of a broker; clients cannot
    renegotiate them.
    """

    max_sessions: int = Field(
        default=5, ge=1, description="Max concurrently alive shell sessions"
    )
    scrollback_buffer_size: int = Field(
        default=50_000,
        ge=1,
        description="Characters of output kept per session for reconnect replay",
    )
    shell: str = Field(default="bash", description="Interactive command to run")
    shell_args: list[str] = Field(default_factory=list)
    cwd: str = Field(
        default_factory=_default_cwd, description="Working directory for new shells"
    )
    cols: int = Field(default=80, ge=1, description="Initial terminal width")
    rows: int = Field(default=24, ge=1, description="Initial terminal height")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    ws_path: str = Field(default="/api/terminal-ws")
    ping_interval: float = Field(
        default=15.0, description="Seconds between websocket keepalive pings"
    )
    ping_timeout: float = Field(
        default=120.0, description="Seconds without a pong before dropping a client"
    )
    outbox_size: int = Field(
        default=256,
        ge=1,
        description="Messages queued per client before it is dropped as too slow",
    )

    @property
    def command(self) -> list[str]:
        return [self.shell, *self.shell_args]

    @classmethod
    def load(cls, config_path: str | None = None) -> BrokerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PTYBROKER_MAX_SESSIONS            - Max alive sessions
            PTYBROKER_SCROLLBACK_BUFFER_SIZE  - Replay buffer size (characters)
            PTYBROKER_SHELL                   - Shell command
            PTYBROKER_CWD                     - Working directory for shells
            PTYBROKER_HOST                    - Bind address
            PORT                              - Listen port
        """
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            config_data = json.loads(Path(config_path).read_text())

        env_overrides = {
            "PTYBROKER_MAX_SESSIONS": "max_sessions",
            "PTYBROKER_SCROLLBACK_BUFFER_SIZE": "scrollback_buffer_size",
            "PTYBROKER_SHELL": "shell",
            "PTYBROKER_CWD": "cwd",
            "PTYBROKER_HOST": "host",
            "PORT": "port",
        }
        for env_var, key in env_overrides.items():
            value = os.environ.get(env_var)
            if value:
                config_data[key] = value

        return cls.model_validate(config_data)
