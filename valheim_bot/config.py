from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8080

    discord_public_key: str = ""
    allow_unsigned_requests: bool = False
    discord_api_base: str = "https://discord.com/api/v10"
    command_name: str = "valheim"

    key_vault_name: str = ""
    server_password: str = ""

    subscription_id: str = ""
    resource_group_name: str = ""
    container_group_name: str = "valheim-server"
    location: str = "eastus"
    server_name: str = "Valheim Server"
    world_name: str = "Dedicated"
    storage_account_name: str = ""
    file_share_name: str = ""
    container_image: str = "lloesche/valheim-server:latest"
    cpu_cores: float = 2.0
    memory_gb: float = 4.0
    game_ports: list[int] = [2456, 2457, 2458]

    auto_shutdown_minutes: int = 120
    start_poll_interval_seconds: float = 10.0
    start_timeout_seconds: float = 300.0
    sweep_interval_seconds: float = 300.0
    sweep_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
