"""
Connection manager configuration.

Loads configuration from a YAML file with environment variable overrides.
Uses Pydantic for validation and type safety.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("stormlink.yml")


class TransportConfig(BaseModel):
    """Transport client settings."""
    request_timeout: float = Field(default=30.0, description="Default request timeout in seconds")
    stream_timeout: float = Field(default=15.0, description="Streaming handshake timeout in seconds")
    probe_timeout: float = Field(default=5.0, le=5.0, description="Latency probe timeout in seconds")
    reachability_timeout: float = Field(default=10.0, description="Service reachability check timeout")
    handshake_confirm_delay: float = Field(default=2.0, description="Seconds a new stream must stay open before it is confirmed")
    probe_target: str = Field(default="https://www.google.com", description="Reference endpoint for latency probes")
    probe_host: str = Field(default="1.1.1.1", description="Host used to test the default network path")
    probe_port: int = Field(default=443, description="Port used to test the default network path")
    reachability_interval: float = Field(default=10.0, description="Seconds between network path checks")


class RegistryConfig(BaseModel):
    """Connection registry settings."""
    stale_threshold: float = Field(default=300.0, description="Seconds without activity before a connection is stale")
    activity_interval: float = Field(default=5.0, description="Seconds between activity sweeps")
    staleness_interval: float = Field(default=30.0, description="Seconds between staleness sweeps")
    reconnect_delay: float = Field(default=2.0, description="Flat delay before each reconnection attempt")
    handshake_grace: float = Field(default=5.0, description="Seconds allowed past the world timeout for a stream handshake to report")
    idle_health_threshold: float = Field(default=60.0, description="Seconds of inactivity that mark health as poor")
    history_limit: int = Field(default=100, description="Maximum retained history entries")
    history_key: str = Field(default="connectionHistory", description="Store key for persisted history")
    report_window: float = Field(default=24 * 60 * 60, description="Default report window in seconds")


class StorageConfig(BaseModel):
    """Durable key/value storage settings."""
    data_dir: str = Field(default=".stormlink", description="Directory for persisted state")


class DebugConfig(BaseModel):
    """Debug and development settings."""
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")


class StormLinkConfig(BaseModel):
    """Complete connection manager configuration."""
    transport: TransportConfig = Field(default_factory=TransportConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "StormLinkConfig":
        """Load configuration from YAML file."""
        path = Path(path) if path else DEFAULT_CONFIG_PATH

        data = {}
        if path.exists():
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}

        # Apply environment variable overrides
        data = cls._apply_env_overrides(data)

        return cls(**data)

    @staticmethod
    def _apply_env_overrides(data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            "STORMLINK_LOG_LEVEL": ("debug", "log_level"),
            "STORMLINK_DATA_DIR": ("storage", "data_dir"),
            "STORMLINK_STALE_THRESHOLD": ("registry", "stale_threshold"),
            "STORMLINK_RECONNECT_DELAY": ("registry", "reconnect_delay"),
            "STORMLINK_PROBE_TARGET": ("transport", "probe_target"),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in data:
                    data[section] = {}

                # Convert types based on default
                if key in ("stale_threshold", "reconnect_delay"):
                    data[section][key] = float(value)
                else:
                    data[section][key] = value

        return data

    def save(self, path: Path) -> None:
        """Save configuration to file."""
        data = self.model_dump()
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
