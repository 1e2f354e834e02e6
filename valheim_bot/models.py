from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class InteractionType(IntEnum):
    PING = 1
    APPLICATION_COMMAND = 2


class ResponseType(IntEnum):
    PONG = 1
    CHANNEL_MESSAGE_WITH_SOURCE = 4
    DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE = 5


EPHEMERAL = 64


class PingInteraction(BaseModel):
    kind: Literal["ping"] = "ping"


class CommandInteraction(BaseModel):
    kind: Literal["command"] = "command"
    command_name: Optional[str] = None
    subcommand: Optional[str] = None
    interaction_token: Optional[str] = None
    application_id: Optional[str] = None


class UnknownInteraction(BaseModel):
    kind: Literal["unknown"] = "unknown"
    type: Optional[int] = None


Interaction = Union[PingInteraction, CommandInteraction, UnknownInteraction]


class MessageData(BaseModel):
    content: str
    flags: Optional[int] = None


class InteractionResponse(BaseModel):
    type: ResponseType
    data: Optional[MessageData] = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ContainerState(str, Enum):
    UNKNOWN = "Unknown"
    WAITING = "Waiting"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPED = "Stopped"
    TERMINATED = "Terminated"
    FAILED = "Failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ContainerState":
        if not value:
            return cls.UNKNOWN
        normalized = value.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return _STATE_ALIASES.get(normalized, cls.UNKNOWN)

    @property
    def is_down(self) -> bool:
        return self in (ContainerState.STOPPED, ContainerState.TERMINATED)


_STATE_ALIASES = {
    "pending": ContainerState.WAITING,
    "creating": ContainerState.STARTING,
    "repairing": ContainerState.STARTING,
    "succeeded": ContainerState.TERMINATED,
}


class ServerPhase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


class ResourceStatus(BaseModel):
    phase: ServerPhase
    started_at: Optional[datetime] = None
    auto_shutdown_at: Optional[datetime] = None


class InstanceDescriptor(BaseModel):
    name: str
    state: ContainerState = ContainerState.UNKNOWN
    public_address: Optional[str] = None
    fqdn: Optional[str] = None
    started_at: Optional[datetime] = None


class FileShareMount(BaseModel):
    volume_name: str = "world-data"
    mount_path: str = "/config"
    share_name: str
    storage_account_name: str


class ContainerGroupSpec(BaseModel):
    location: str
    container_name: str = "valheim-server"
    image: str
    cpu: float
    memory_gb: float
    environment: dict[str, str] = Field(default_factory=dict)
    secure_environment: dict[str, str] = Field(default_factory=dict)
    udp_ports: list[int] = Field(default_factory=list)
    file_share: FileShareMount
    dns_name_label: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["healthy"]
    version: str
    uptime: int
