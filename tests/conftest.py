"""Shared fixtures: fake control plane, fake clock, recorded follow-ups."""

import json
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from valheim_bot.compute import ComputeClient
from valheim_bot.config import Settings
from valheim_bot.exceptions import NotFoundError
from valheim_bot.models import ContainerGroupSpec, ContainerState, InstanceDescriptor
from valheim_bot.notifier import FollowUpNotifier
from valheim_bot.secret_provider import SettingsSecretProvider
from valheim_bot.server_manager import ServerManager

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
SERVER_IP = "20.30.40.50"
SERVER_FQDN = "valheim-1a2b3c4d.eastus.azurecontainer.io"


class FakeCompute(ComputeClient):
    """In-memory control plane.

    ``after_create`` scripts the states observed once a create was submitted;
    the last one repeats.
    """

    def __init__(self) -> None:
        self.descriptor: Optional[InstanceDescriptor] = None
        self.after_create: list[ContainerState] = [ContainerState.RUNNING]
        self.get_error: Optional[Exception] = None
        self.created: list[tuple[str, ContainerGroupSpec]] = []
        self.deleted: list[tuple[str, bool]] = []
        self.get_calls = 0

    def set_state(self, state: ContainerState, started_at: Optional[datetime] = None) -> None:
        self.descriptor = InstanceDescriptor(
            name="valheim-test",
            state=state,
            public_address=SERVER_IP,
            fqdn=SERVER_FQDN,
            started_at=started_at,
        )

    async def get(self, name: str) -> InstanceDescriptor:
        self.get_calls += 1
        if self.get_error is not None:
            raise self.get_error
        if self.created and self.after_create:
            state = self.after_create.pop(0) if len(self.after_create) > 1 else self.after_create[0]
            self.set_state(state, started_at=NOW if state is ContainerState.RUNNING else None)
        if self.descriptor is None:
            raise NotFoundError(f"Container group {name} not found")
        return self.descriptor

    async def create_or_replace(self, name: str, spec: ContainerGroupSpec) -> str:
        self.created.append((name, spec))
        self.set_state(ContainerState.WAITING)
        return f"/containerGroups/{name}"

    async def delete(self, name: str, wait: bool = False) -> None:
        self.deleted.append((name, wait))
        self.descriptor = None


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def config() -> Settings:
    return Settings(
        subscription_id="sub-123",
        resource_group_name="valheim-rg",
        container_group_name="valheim-test",
        storage_account_name="valheimstore",
        file_share_name="worlds",
        server_password="hunter2",
        discord_public_key="",
        key_vault_name="",
        auto_shutdown_minutes=120,
        start_poll_interval_seconds=10,
        start_timeout_seconds=300,
        sweep_enabled=False,
    )


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sent() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def notifier(sent: list[tuple[str, str]]) -> FollowUpNotifier:
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)["content"]))
        return httpx.Response(204)

    return FollowUpNotifier("https://discord.test/api/v10", transport=httpx.MockTransport(handler))


@pytest.fixture
def manager(
    config: Settings,
    compute: FakeCompute,
    notifier: FollowUpNotifier,
    clock: FakeClock,
) -> ServerManager:
    return ServerManager(
        config,
        compute,
        SettingsSecretProvider(config),
        notifier,
        clock=lambda: NOW,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )


@pytest.fixture
def signing_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


@pytest.fixture
def public_key_hex(signing_key: Ed25519PrivateKey) -> str:
    return signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


@pytest.fixture
def sign(signing_key: Ed25519PrivateKey) -> Callable[..., dict]:
    def _sign(body: bytes, timestamp: str = "1767960000") -> dict:
        signature = signing_key.sign(timestamp.encode("utf-8") + body)
        return {"X-Signature-Ed25519": signature.hex(), "X-Signature-Timestamp": timestamp}

    return _sign
