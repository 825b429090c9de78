"""
keybridge configuration.
"""

from dataclasses import dataclass, fields
from typing import Optional

LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class BridgeConfig:
    """Settings shared by the page side, the peer server and the CLI."""

    # Peer server address (page side)
    peer_url: str = "http://127.0.0.1:8765"

    # Peer server bind address
    host: str = "127.0.0.1"
    port: int = 8765

    # Script execution defaults
    script_storage_prefix: str = "script_"
    is_async: bool = True
    hide_host_identifiers: bool = False
    allow_callback_arguments: bool = True

    # Deepest object level the peer describes
    max_describe_depth: int = 8

    # Seconds a call with callback arguments stays open with no callback firing
    callback_idle_timeout: float = 30.0

    log_level: str = "info"

    @classmethod
    def from_yaml(cls, path: str) -> "BridgeConfig":
        """Load configuration from a YAML file. Unknown keys are rejected."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, path: Optional[str] = None, **overrides) -> "BridgeConfig":
        """Load from ``path`` (or defaults), apply non-None overrides, validate."""
        config = cls.from_yaml(path) if path else cls()
        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration."""
        if not self.script_storage_prefix:
            raise ValueError("script_storage_prefix must be a non-empty string")
        if self.port < 1 or self.port > 65535:
            raise ValueError("port must be between 1 and 65535")
        if self.max_describe_depth < 1:
            raise ValueError("max_describe_depth must be positive")
        if self.callback_idle_timeout <= 0:
            raise ValueError("callback_idle_timeout must be positive")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
