"""Compute lifecycle client.

``ComputeClient`` is the narrow interface the handlers and the sweeper use to
create, inspect and delete the named server instance. ``AzureContainerClient``
implements it on top of Azure Container Instances; the management SDK is
synchronous, so every call is pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.containerinstance.models import (
    AzureFileVolume,
    Container,
    ContainerGroup,
    ContainerPort,
    EnvironmentVariable,
    IpAddress,
    Port,
    ResourceRequests,
    ResourceRequirements,
    Volume,
    VolumeMount,
)

from .config import Settings
from .exceptions import ConfigurationError, ControlPlaneError, NotFoundError
from .models import ContainerGroupSpec, ContainerState, FileShareMount, InstanceDescriptor

logger = logging.getLogger(__name__)


class ComputeClient(ABC):
    @abstractmethod
    async def create_or_replace(self, name: str, spec: ContainerGroupSpec) -> str:
        """Submit the instance definition and return its resource id.

        Returns as soon as the control plane accepted the request.
        """
        ...

    @abstractmethod
    async def get(self, name: str) -> InstanceDescriptor:
        """Observe the instance.

        Raises:
            NotFoundError: no instance with that name exists
            ControlPlaneError: the query itself failed
        """
        ...

    @abstractmethod
    async def delete(self, name: str, wait: bool = False) -> None:
        """Delete the instance; with ``wait`` block until it is gone."""
        ...


def dns_name_label(resource_group_name: str) -> str:
    digest = hashlib.sha256(resource_group_name.encode("utf-8")).hexdigest()
    return f"valheim-{digest[:8]}"


def build_container_spec(settings: Settings, server_password: str) -> ContainerGroupSpec:
    if not settings.storage_account_name:
        raise ConfigurationError("STORAGE_ACCOUNT_NAME")
    if not settings.file_share_name:
        raise ConfigurationError("FILE_SHARE_NAME")

    return ContainerGroupSpec(
        location=settings.location,
        image=settings.container_image,
        cpu=settings.cpu_cores,
        memory_gb=settings.memory_gb,
        environment={
            "SERVER_NAME": settings.server_name,
            "WORLD_NAME": settings.world_name,
            "SERVER_PUBLIC": "1",
            "BACKUPS": "1",
            "BACKUPS_RETENTION_DAYS": "7",
            "UPDATE_CRON": "0 4 * * *",
        },
        secure_environment={"SERVER_PASS": server_password},
        udp_ports=list(settings.game_ports),
        file_share=FileShareMount(
            share_name=settings.file_share_name,
            storage_account_name=settings.storage_account_name,
        ),
        dns_name_label=dns_name_label(settings.resource_group_name),
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_PROVISIONING_STATES = {
    "pending": ContainerState.WAITING,
    "creating": ContainerState.STARTING,
    "updating": ContainerState.STARTING,
    "repairing": ContainerState.STARTING,
    "failed": ContainerState.FAILED,
    "canceled": ContainerState.FAILED,
    "deleting": ContainerState.STOPPED,
}


def _provisioning_state(group: Any) -> ContainerState:
    value = getattr(group, "provisioning_state", None) or ""
    return _PROVISIONING_STATES.get(value.lower(), ContainerState.UNKNOWN)


def describe_container_group(name: str, group: Any) -> InstanceDescriptor:
    state = None
    if group.instance_view is not None:
        state = group.instance_view.state

    started_at = None
    containers = group.containers or []
    view = containers[0].instance_view if containers else None
    if view is not None:
        current = view.current_state
        if state is None and current is not None:
            state = current.state
        if current is not None and current.start_time is not None:
            started_at = current.start_time
        elif view.events:
            first = next((event for event in view.events if event.count), None)
            if first is not None:
                started_at = first.first_timestamp

    # No instance view yet while the group is still being provisioned.
    parsed = ContainerState.parse(state) if state else _provisioning_state(group)

    address = group.ip_address
    return InstanceDescriptor(
        name=name,
        state=parsed,
        public_address=address.ip if address is not None else None,
        fqdn=address.fqdn if address is not None else None,
        started_at=_as_utc(started_at),
    )


class AzureContainerClient(ComputeClient):
    def __init__(
        self,
        settings: Settings,
        credential: Any = None,
        container_client: Any = None,
        storage_client: Any = None,
    ) -> None:
        self._settings = settings
        self._credential = credential
        self._container_client = container_client
        self._storage_client = storage_client

    def _resource_group(self) -> str:
        if not self._settings.subscription_id:
            raise ConfigurationError("SUBSCRIPTION_ID")
        if not self._settings.resource_group_name:
            raise ConfigurationError("RESOURCE_GROUP_NAME")
        return self._settings.resource_group_name

    def _get_credential(self) -> Any:
        if self._credential is None:
            from azure.identity import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
        return self._credential

    def _containers(self) -> Any:
        if self._container_client is None:
            from azure.mgmt.containerinstance import ContainerInstanceManagementClient

            self._container_client = ContainerInstanceManagementClient(
                self._get_credential(), self._settings.subscription_id
            )
        return self._container_client

    def _storage(self) -> Any:
        if self._storage_client is None:
            from azure.mgmt.storage import StorageManagementClient

            self._storage_client = StorageManagementClient(
                self._get_credential(), self._settings.subscription_id
            )
        return self._storage_client

    async def create_or_replace(self, name: str, spec: ContainerGroupSpec) -> str:
        return await asyncio.to_thread(self._create_or_replace, name, spec)

    async def get(self, name: str) -> InstanceDescriptor:
        return await asyncio.to_thread(self._get, name)

    async def delete(self, name: str, wait: bool = False) -> None:
        await asyncio.to_thread(self._delete, name, wait)

    def _get(self, name: str) -> InstanceDescriptor:
        resource_group = self._resource_group()
        try:
            group = self._containers().container_groups.get(resource_group, name)
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"Container group {name} not found") from exc
        except AzureError as exc:
            raise ControlPlaneError(f"Failed to query container group {name}: {exc}") from exc
        return describe_container_group(name, group)

    def _delete(self, name: str, wait: bool) -> None:
        resource_group = self._resource_group()
        try:
            poller = self._containers().container_groups.begin_delete(resource_group, name)
            if wait:
                poller.result()
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"Container group {name} not found") from exc
        except AzureError as exc:
            raise ControlPlaneError(f"Failed to delete container group {name}: {exc}") from exc

    def _create_or_replace(self, name: str, spec: ContainerGroupSpec) -> str:
        resource_group = self._resource_group()
        try:
            storage_key = self._storage_account_key(resource_group, spec.file_share.storage_account_name)
            group = self._container_group(spec, storage_key)
            logger.info("Creating container group %s", name)
            self._containers().container_groups.begin_create_or_update(resource_group, name, group)
        except AzureError as exc:
            raise ControlPlaneError(f"Failed to create container group {name}: {exc}") from exc
        return (
            f"/subscriptions/{self._settings.subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.ContainerInstance/containerGroups/{name}"
        )

    def _storage_account_key(self, resource_group: str, account_name: str) -> str:
        # Azure Files mounts on ACI only accept account keys.
        keys = self._storage().storage_accounts.list_keys(resource_group, account_name)
        if not keys.keys:
            raise ControlPlaneError(f"Storage account {account_name} returned no keys")
        return keys.keys[0].value

    @staticmethod
    def _container_group(spec: ContainerGroupSpec, storage_key: str) -> ContainerGroup:
        environment = [EnvironmentVariable(name=key, value=value) for key, value in spec.environment.items()]
        environment.extend(
            EnvironmentVariable(name=key, secure_value=value) for key, value in spec.secure_environment.items()
        )
        container = Container(
            name=spec.container_name,
            image=spec.image,
            resources=ResourceRequirements(
                requests=ResourceRequests(memory_in_gb=spec.memory_gb, cpu=spec.cpu),
            ),
            environment_variables=environment,
            ports=[ContainerPort(port=port, protocol="UDP") for port in spec.udp_ports],
            volume_mounts=[
                VolumeMount(name=spec.file_share.volume_name, mount_path=spec.file_share.mount_path),
            ],
        )
        return ContainerGroup(
            location=spec.location,
            containers=[container],
            os_type="Linux",
            restart_policy="Never",
            ip_address=IpAddress(
                ports=[Port(protocol="UDP", port=port) for port in spec.udp_ports],
                type="Public",
                dns_name_label=spec.dns_name_label,
            ),
            volumes=[
                Volume(
                    name=spec.file_share.volume_name,
                    azure_file=AzureFileVolume(
                        share_name=spec.file_share.share_name,
                        storage_account_name=spec.file_share.storage_account_name,
                        storage_account_key=storage_key,
                    ),
                ),
            ],
        )
