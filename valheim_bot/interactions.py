from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from .models import (
    EPHEMERAL,
    CommandInteraction,
    Interaction,
    InteractionResponse,
    InteractionType,
    MessageData,
    PingInteraction,
    ResponseType,
    UnknownInteraction,
)

UNKNOWN_COMMAND = "Unknown command"
NO_SUBCOMMAND = "No subcommand provided"
UNKNOWN_SUBCOMMAND = "Unknown subcommand"


def classify(payload: Any) -> Interaction:
    """Parse a decoded interaction body into a tagged interaction."""
    if not isinstance(payload, dict):
        return UnknownInteraction()

    kind = payload.get("type")
    if kind == InteractionType.PING:
        return PingInteraction()
    if kind != InteractionType.APPLICATION_COMMAND:
        return UnknownInteraction(type=kind if isinstance(kind, int) else None)

    data = payload.get("data")
    command_name = None
    subcommand = None
    if isinstance(data, dict):
        name = data.get("name")
        command_name = name if isinstance(name, str) else None
        options = data.get("options")
        if isinstance(options, list) and options and isinstance(options[0], dict):
            option_name = options[0].get("name")
            subcommand = option_name if isinstance(option_name, str) else None

    token = payload.get("token")
    application_id = payload.get("application_id")
    return CommandInteraction(
        command_name=command_name,
        subcommand=subcommand,
        interaction_token=str(token) if token else None,
        application_id=str(application_id) if application_id else None,
    )


def pong() -> InteractionResponse:
    return InteractionResponse(type=ResponseType.PONG)


def deferred() -> InteractionResponse:
    return InteractionResponse(type=ResponseType.DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE)


def message(content: str, flags: Optional[int] = None) -> InteractionResponse:
    return InteractionResponse(
        type=ResponseType.CHANNEL_MESSAGE_WITH_SOURCE,
        data=MessageData(content=content, flags=flags),
    )


def ephemeral(content: str) -> InteractionResponse:
    return message(content, flags=EPHEMERAL)


Handler = Callable[[CommandInteraction], Awaitable[InteractionResponse]]


class CommandDispatcher:
    """Routes ``/<command> <subcommand>`` invocations to their handlers."""

    def __init__(self, command_name: str, handlers: dict[str, Handler]) -> None:
        self.command_name = command_name
        self._handlers = handlers

    async def dispatch(self, interaction: CommandInteraction) -> InteractionResponse:
        if interaction.command_name != self.command_name:
            return ephemeral(UNKNOWN_COMMAND)
        if not interaction.subcommand:
            return ephemeral(NO_SUBCOMMAND)
        handler = self._handlers.get(interaction.subcommand)
        if handler is None:
            return ephemeral(UNKNOWN_SUBCOMMAND)
        return await handler(interaction)
