from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .config import Settings
from .exceptions import ConfigurationError

SERVER_PASSWORD = "ServerPassword"
DISCORD_PUBLIC_KEY = "DiscordPublicKey"

logger = logging.getLogger(__name__)


class SecretProvider(ABC):
    """Read-only access to named secrets, cached for the process lifetime."""

    def __init__(self) -> None:
        self._cache: dict[str, str] = {}

    async def get_secret(self, name: str) -> str:
        if name not in self._cache:
            value = await self._fetch(name)
            if not value:
                raise ConfigurationError(name)
            self._cache[name] = value
        return self._cache[name]

    @abstractmethod
    async def _fetch(self, name: str) -> Optional[str]:
        ...


class SettingsSecretProvider(SecretProvider):
    """Secrets taken straight from settings, for deployments without a vault."""

    def __init__(self, settings: Settings) -> None:
        super().__init__()
        self._values = {
            SERVER_PASSWORD: settings.server_password,
            DISCORD_PUBLIC_KEY: settings.discord_public_key,
        }

    async def _fetch(self, name: str) -> Optional[str]:
        return self._values.get(name)


class KeyVaultSecretProvider(SecretProvider):
    def __init__(self, vault_name: str, credential: Any = None, client: Any = None) -> None:
        super().__init__()
        if client is None:
            from azure.identity import DefaultAzureCredential
            from azure.keyvault.secrets import SecretClient

            client = SecretClient(
                vault_url=f"https://{vault_name}.vault.azure.net",
                credential=credential or DefaultAzureCredential(),
            )
        self._client = client

    async def _fetch(self, name: str) -> Optional[str]:
        try:
            secret = await asyncio.to_thread(self._client.get_secret, name)
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            logger.error("Key Vault lookup for %s failed: %s", name, exc)
            return None
        return secret.value


def build_secret_provider(settings: Settings) -> SecretProvider:
    if settings.key_vault_name:
        return KeyVaultSecretProvider(settings.key_vault_name)
    return SettingsSecretProvider(settings)
