from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError

from valheim_bot.exceptions import ConfigurationError
from valheim_bot.secret_provider import (
    SERVER_PASSWORD,
    KeyVaultSecretProvider,
    SettingsSecretProvider,
    build_secret_provider,
)


async def test_settings_provider(config):
    provider = SettingsSecretProvider(config)

    assert await provider.get_secret(SERVER_PASSWORD) == "hunter2"


async def test_settings_provider_missing_secret(config):
    provider = SettingsSecretProvider(config.model_copy(update={"server_password": ""}))

    with pytest.raises(ConfigurationError) as exc_info:
        await provider.get_secret(SERVER_PASSWORD)
    assert exc_info.value.setting == SERVER_PASSWORD


async def test_key_vault_provider_caches_values():
    client = MagicMock()
    client.get_secret.return_value = MagicMock(value="from-vault")
    provider = KeyVaultSecretProvider("valheim-kv", client=client)

    assert await provider.get_secret(SERVER_PASSWORD) == "from-vault"
    assert await provider.get_secret(SERVER_PASSWORD) == "from-vault"
    client.get_secret.assert_called_once_with(SERVER_PASSWORD)


async def test_key_vault_provider_missing_secret():
    client = MagicMock()
    client.get_secret.side_effect = ResourceNotFoundError("no such secret")
    provider = KeyVaultSecretProvider("valheim-kv", client=client)

    with pytest.raises(ConfigurationError):
        await provider.get_secret(SERVER_PASSWORD)


def test_build_without_vault_uses_settings(config):
    assert isinstance(build_secret_provider(config), SettingsSecretProvider)
