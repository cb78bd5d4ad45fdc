"""SSH client settings.

Managed with Pydantic Settings. Sources, highest priority first:
1. keyword arguments
2. environment variables (prefix ``SSH_CLIENT_``)
3. ``.env`` file (``_env_file=`` overrides the path)
4. JSON config file named by ``config_file``, ``SSH_CLIENT_CONFIG_FILE`` or
   ``ssh_client_config.json``
5. defaults

Example environment:
    SSH_CLIENT_LOG_LEVEL=DEBUG
    SSH_CLIENT_CONNECT_TIMEOUT_SECONDS=10
    SSH_CLIENT_USE_SECURE_METHOD_PREFERENCES=true
"""
from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from linux_ssh_client.types import (
    DEFAULT_FILE_MODE,
    DEFAULT_PACKET_SIZE,
    DEFAULT_SCP_BUFFER_SIZE,
    DEFAULT_WINDOW_SIZE,
)


class SSHClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SSH_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_file: Path = Field(default=Path("ssh_client_config.json"), description="JSON config file")

    # logging
    log_level: str = Field(default="INFO", description="Log level")
    log_dir: Path = Field(default=Path("logs"), description="Log directory")
    log_rotation: str = Field(default="10 MB", description="Log file rotation size")
    log_retention: str = Field(default="30 days", description="Log file retention")

    # connection
    connect_timeout_seconds: float | None = Field(
        default=None, gt=0, description="TCP connect and handshake timeout, None waits forever"
    )
    session_timeout_seconds: float = Field(
        default=0, ge=0, description="Timeout for blocking engine calls, 0 disables it"
    )
    keepalive_interval_seconds: int = Field(
        default=0, ge=0, description="Keepalive interval, 0 disables keepalives"
    )
    keepalive_want_reply: bool = Field(default=False, description="Ask the server to answer keepalives")
    use_secure_method_preferences: bool = Field(
        default=False, description="Restrict negotiation to the hardened algorithm lists"
    )

    # channels and transfers
    channel_window_size: int = Field(default=DEFAULT_WINDOW_SIZE, ge=1, description="Channel window size (bytes)")
    channel_packet_size: int = Field(default=DEFAULT_PACKET_SIZE, ge=1, description="Maximum channel packet size (bytes)")
    scp_buffer_size: int = Field(default=DEFAULT_SCP_BUFFER_SIZE, ge=1, description="SCP chunk size (bytes)")
    default_file_mode: int = Field(
        default=DEFAULT_FILE_MODE, ge=0, le=0o7777, description="POSIX mode for uploaded files"
    )

    # credentials
    keyring_service: str = Field(default="linux-ssh-client", description="Keyring service name")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        config_file = getattr(init_settings, "init_kwargs", {}).get("config_file") or os.getenv(
            "SSH_CLIENT_CONFIG_FILE", str(settings_cls.model_fields["config_file"].default)
        )
        # a missing file contributes nothing
        json_settings = JsonConfigSettingsSource(settings_cls, json_file=Path(config_file))
        return init_settings, env_settings, dotenv_settings, json_settings, file_secret_settings
