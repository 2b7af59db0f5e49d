"""Canopy configuration management."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class Config:
    """Canopy configuration."""

    workspace_path: Path = field(default_factory=lambda: Path.home() / ".canopy")
    log_level: str = "INFO"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    # Token verification; issuing tokens happens elsewhere
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Invite defaults
    invite_default_max_uses: int = 1
    invite_default_ttl_hours: float = 168.0

    @classmethod
    def load(cls, workspace_path: Path | None = None) -> Config:
        """Load config from defaults, env vars, then the workspace YAML file."""
        config = cls()

        if workspace_path:
            config.workspace_path = workspace_path

        # Override from env
        env_path = os.environ.get("CANOPY_WORKSPACE")
        if env_path and not workspace_path:
            config.workspace_path = Path(env_path)

        env_log = os.environ.get("CANOPY_LOG_LEVEL")
        if env_log:
            config.log_level = env_log

        env_secret = os.environ.get("CANOPY_JWT_SECRET")
        if env_secret:
            config.jwt_secret = env_secret

        # Load YAML config if exists
        config_file = config.workspace_path / "config.yaml"
        if config_file.exists():
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
            for key, value in data.items():
                if key == "workspace_path" or not hasattr(config, key):
                    continue
                expected_type = type(getattr(config, key))
                setattr(config, key, expected_type(value))

        return config

    @property
    def db_path(self) -> Path:
        return self.workspace_path / "canopy.db"

    def save(self) -> None:
        """Save current config to YAML. The JWT secret is never written."""
        self.workspace_path.mkdir(parents=True, exist_ok=True)
        config_file = self.workspace_path / "config.yaml"
        data = {
            "log_level": self.log_level,
            "wal_mode": self.wal_mode,
            "busy_timeout_ms": self.busy_timeout_ms,
            "jwt_algorithm": self.jwt_algorithm,
            "invite_default_max_uses": self.invite_default_max_uses,
            "invite_default_ttl_hours": self.invite_default_ttl_hours,
        }
        with open(config_file, "w") as f:
            yaml.dump(data, f, default_flow_style=False)
