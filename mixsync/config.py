"""Configuration loading for mixsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    device_id: str = "mixsync-node"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    request_timeout_seconds: float = 10.0


@dataclass
class StoreConfig:
    """Configuration for the change store.

    An empty database_path keeps the log in process memory.
    """

    database_path: str = ""


@dataclass
class AuthConfig:
    """Configuration for the push endpoint gate."""

    push_token: str | None = None  # None leaves pushes open


@dataclass
class ClientConfig:
    """Configuration for the sync client used by the CLI."""

    server_url: str = "http://localhost:8080"
    batch_size: int = 100
    max_retries: int = 3
    timeout_seconds: float = 30.0


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with MIXSYNC_ prefix."""
    return os.environ.get(f"MIXSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if device_id := _get_env("DEVICE_ID"):
        config.node.device_id = device_id

    # Server overrides; bare PORT is honored for container platforms
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT", os.environ.get("PORT")):
        config.server.port = int(port)
    if origins := _get_env("CORS_ORIGINS"):
        config.server.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
    if request_timeout := _get_env("REQUEST_TIMEOUT"):
        config.server.request_timeout_seconds = float(request_timeout)

    # Store overrides
    if database_path := _get_env("DATABASE_PATH"):
        config.store.database_path = database_path

    # Auth overrides
    if push_token := _get_env("PUSH_TOKEN"):
        config.auth.push_token = push_token

    # Client overrides
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if batch_size := _get_env("BATCH_SIZE"):
        config.client.batch_size = int(batch_size)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    device_id=data["node"].get("device_id", config.node.device_id)
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    cors_origins=server_data.get(
                        "cors_origins", config.server.cors_origins
                    ),
                    request_timeout_seconds=server_data.get(
                        "request_timeout_seconds",
                        config.server.request_timeout_seconds,
                    ),
                )

            if "store" in data:
                config.store = StoreConfig(
                    database_path=data["store"].get(
                        "database_path", config.store.database_path
                    ) or "",
                )

            if "auth" in data:
                config.auth = AuthConfig(
                    push_token=data["auth"].get("push_token") or None,
                )

            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    batch_size=client_data.get("batch_size", config.client.batch_size),
                    max_retries=client_data.get(
                        "max_retries", config.client.max_retries
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                )

    return _apply_env_overrides(config)
