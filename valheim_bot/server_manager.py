from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .compute import ComputeClient, build_container_spec
from .config import Settings
from .exceptions import ConfigurationError, ControlPlaneError, NotFoundError
from .interactions import deferred, ephemeral, message
from .models import EPHEMERAL, CommandInteraction, ContainerState, InstanceDescriptor, InteractionResponse
from .notifier import FollowUpNotifier
from .polling import poll_until
from .secret_provider import SERVER_PASSWORD, SecretProvider
from .status_cache import StatusCache, utcnow
from .tasks import BackgroundTasks

STARTING_MESSAGE = "🔄 Server is starting... This may take 2-3 minutes."
TIMEOUT_MESSAGE = (
    "⏱️ Server is taking longer than expected to start. "
    "Please check the status with `/valheim status`"
)

_SETTLED_STATES = (
    ContainerState.RUNNING,
    ContainerState.FAILED,
    ContainerState.STOPPED,
    ContainerState.TERMINATED,
)

logger = logging.getLogger(__name__)


class ServerManager:
    """Start, stop and status for the single game server instance.

    ``start`` answers with a deferred response and finishes in a supervised
    background task that reports progress through follow-up messages.
    ``stop`` and ``status`` answer synchronously. Create and delete for the
    instance name are serialized through the status cache's lock.
    """

    def __init__(
        self,
        settings: Settings,
        compute: ComputeClient,
        secrets: SecretProvider,
        notifier: FollowUpNotifier,
        cache: Optional[StatusCache] = None,
        tasks: Optional[BackgroundTasks] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.compute = compute
        self.secrets = secrets
        self.notifier = notifier
        self.cache = cache or StatusCache(settings.auto_shutdown_minutes)
        self.tasks = tasks or BackgroundTasks()
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.settings.container_group_name

    async def handle_start(self, interaction: CommandInteraction) -> InteractionResponse:
        if not interaction.interaction_token or not interaction.application_id:
            return ephemeral("❌ Error: Missing interaction data")

        self.tasks.spawn(
            self.start_and_notify(interaction.application_id, interaction.interaction_token),
            name=f"start-{self.name}",
            timeout=self.settings.start_timeout_seconds + 2 * self.settings.start_poll_interval_seconds + 60,
        )
        return deferred()

    async def handle_stop(self, interaction: CommandInteraction) -> InteractionResponse:
        ok, text = await self.stop_server()
        return message(text, flags=0 if ok else EPHEMERAL)

    async def handle_status(self, interaction: CommandInteraction) -> InteractionResponse:
        return message(await self.status_text())

    async def start_and_notify(self, application_id: str, interaction_token: str) -> None:
        async def notify(content: str) -> None:
            await self.notifier.send(application_id, interaction_token, content)

        try:
            await notify(STARTING_MESSAGE)

            existing = await self._ensure_started()
            if existing is not None:
                await notify(self._ready_message(existing, already_running=True))
                return

            logger.info("Polling for server to be ready...")
            result = await poll_until(
                self._observe_while_starting,
                lambda descriptor: descriptor.state in _SETTLED_STATES,
                interval=self.settings.start_poll_interval_seconds,
                budget=self.settings.start_timeout_seconds,
                clock=self._monotonic,
                sleep=self._sleep,
                retry_on=(ControlPlaneError,),
            )

            if result.timed_out:
                logger.warning("Server did not reach Running within %ss", self.settings.start_timeout_seconds)
                await notify(TIMEOUT_MESSAGE)
                return

            descriptor = result.value
            if descriptor.state is ContainerState.RUNNING:
                self.cache.mark_running(self.name, self._clock())
                logger.info("Server is ready! IP: %s", descriptor.public_address)
                await notify(self._ready_message(descriptor))
            else:
                if descriptor.state.is_down:
                    self.cache.mark_stopped(self.name)
                else:
                    self.cache.mark_failed(self.name)
                await notify(f"❌ Server failed to start. Status: {descriptor.state.value}")
        except ConfigurationError as exc:
            logger.error("Cannot start server: %s", exc)
            await notify(f"❌ {exc}")
        except Exception as exc:
            logger.exception("Error in background server start task")
            await notify(f"❌ Error: {exc}")

    async def _ensure_started(self) -> Optional[InstanceDescriptor]:
        """Create the instance unless one is already up.

        Returns the descriptor when the server is already running, otherwise
        None once creation was submitted or is already under way.
        """
        async with self.cache.lock(self.name):
            current = await self._observe()

            if current is not None and current.state is ContainerState.RUNNING:
                cached = self.cache.get(self.name)
                if cached is None or cached.auto_shutdown_at is None:
                    self.cache.mark_running(self.name, current.started_at or self._clock())
                return current

            stale = current is not None and (current.state.is_down or current.state is ContainerState.FAILED)
            if current is not None and not stale:
                logger.info("Container group %s already exists (%s), waiting for it", self.name, current.state.value)
                return None

            if stale:
                logger.info("Deleting %s container group before recreating...", current.state.value.lower())
                try:
                    await self.compute.delete(self.name, wait=True)
                except ControlPlaneError as exc:
                    logger.warning("Could not delete stale container group %s: %s", self.name, exc)

            password = await self.secrets.get_secret(SERVER_PASSWORD)
            spec = build_container_spec(self.settings, password)
            await self.compute.create_or_replace(self.name, spec)
            self.cache.mark_starting(self.name, self._clock())
            return None

    async def _observe(self) -> Optional[InstanceDescriptor]:
        try:
            return await self.compute.get(self.name)
        except NotFoundError:
            logger.info("Container group %s doesn't exist yet", self.name)
            return None

    async def _observe_while_starting(self) -> InstanceDescriptor:
        try:
            return await self.compute.get(self.name)
        except NotFoundError:
            # Deleted while starting, e.g. by a concurrent stop.
            logger.warning("Container group %s disappeared while starting", self.name)
            return InstanceDescriptor(name=self.name, state=ContainerState.STOPPED)

    def _ready_message(self, descriptor: InstanceDescriptor, already_running: bool = False) -> str:
        lines = ["✅ **Server is already running!**" if already_running else "✅ **Server is ready!**", ""]
        if descriptor.public_address:
            lines.append(f"🌐 **IP Address:** `{descriptor.public_address}`")
        if descriptor.fqdn:
            lines.append(f"🔗 **FQDN:** `{descriptor.fqdn}`")
        lines.append("")
        if already_running:
            remaining = self._remaining(descriptor)
            if remaining is not None and remaining.total_seconds() > 0:
                lines.append(f"⏰ Auto-shutdown in {int(remaining.total_seconds() // 60)} minutes")
        else:
            lines.append(f"⏰ Auto-shutdown in {self.settings.auto_shutdown_minutes} minutes")
        lines.append("")
        lines.append("You can now connect to the server in Valheim!")
        return "\n".join(lines)

    async def stop_server(self) -> tuple[bool, str]:
        try:
            async with self.cache.lock(self.name):
                current = await self._observe()
                if current is None or current.state.is_down:
                    self.cache.mark_stopped(self.name)
                    return True, "Server is already stopped!"

                await self.compute.delete(self.name, wait=False)
                self.cache.mark_stopped(self.name)
                return True, "Server is shutting down..."
        except ConfigurationError as exc:
            return False, f"❌ {exc}"
        except ControlPlaneError as exc:
            logger.error("Error stopping server: %s", exc)
            return False, f"Error stopping server: {exc}"

    async def status_text(self) -> str:
        descriptor: Optional[InstanceDescriptor] = None
        try:
            descriptor = await self.compute.get(self.name)
            state = descriptor.state
        except NotFoundError:
            state = ContainerState.STOPPED
        except ConfigurationError as exc:
            return f"❌ {exc}"
        except ControlPlaneError as exc:
            logger.error("Error checking server status: %s", exc)
            state = ContainerState.UNKNOWN
        except Exception:
            logger.exception("Unexpected error checking server status")
            state = ContainerState.UNKNOWN

        if state is ContainerState.RUNNING:
            text = "🟢 Server is **RUNNING**"
            remaining = self._remaining(descriptor)
            if remaining is None:
                return text
            if remaining.total_seconds() > 0:
                return f"{text}\n⏰ Auto-shutdown in {int(remaining.total_seconds() // 60)} minutes"
            return f"{text}\n⚠️ Auto-shutdown time has passed"
        if state.is_down:
            return "🔴 Server is **STOPPED**"
        return f"⚪ Server status: **{state.value.upper()}**"

    def _shutdown_deadline(self, descriptor: Optional[InstanceDescriptor]) -> Optional[datetime]:
        cached = self.cache.get(self.name)
        if cached is not None and cached.auto_shutdown_at is not None:
            return cached.auto_shutdown_at
        if descriptor is not None and descriptor.started_at is not None:
            return descriptor.started_at + timedelta(minutes=self.settings.auto_shutdown_minutes)
        return None

    def _remaining(self, descriptor: Optional[InstanceDescriptor]) -> Optional[timedelta]:
        deadline = self._shutdown_deadline(descriptor)
        if deadline is None:
            return None
        return deadline - self._clock()
