"""Configuration for links, executors and the server."""

from __future__ import annotations

import os
from dataclasses import dataclass

ENV_PREFIX = "MESSAGING_LINK_"

# "module:attribute" of the engine served by `create_app()` and `serve`
ENGINE_ENV_VAR = f"{ENV_PREFIX}ENGINE"
LOG_LEVEL_ENV_VAR = f"{ENV_PREFIX}LOG_LEVEL"

DEFAULT_ENGINE = "messaging_link.engines:echo_engine"


@dataclass
class LinkConfig:
    """Settings shared by the requester and executor sides."""

    # Prefix for generated correlation ids
    id_prefix: str = "op"

    # Context key under which the executor exposes the originating port
    port_context_key: str = "port"

    @classmethod
    def from_env(cls) -> LinkConfig:
        """Build a config from MESSAGING_LINK_* environment variables."""
        defaults = cls()
        return cls(
            id_prefix=os.getenv(f"{ENV_PREFIX}ID_PREFIX", defaults.id_prefix),
            port_context_key=os.getenv(
                f"{ENV_PREFIX}PORT_CONTEXT_KEY", defaults.port_context_key
            ),
        )


def get_engine_ref() -> str:
    """Engine reference configured for the server."""
    return os.getenv(ENGINE_ENV_VAR, DEFAULT_ENGINE)


def get_log_level(default: str = "WARNING") -> str:
    """Log level configured for entry points."""
    return os.getenv(LOG_LEVEL_ENV_VAR, default).upper()
