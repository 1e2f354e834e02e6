from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .compute import AzureContainerClient
from .config import Settings, settings
from .exceptions import AuthenticationError, ConfigurationError, ValidationError
from .interactions import CommandDispatcher, classify, pong
from .models import CommandInteraction, HealthResponse, Interaction, PingInteraction
from .notifier import FollowUpNotifier
from .secret_provider import DISCORD_PUBLIC_KEY, build_secret_provider
from .server_manager import ServerManager
from .signature import SignatureVerifier
from .sweeper import AutoShutdownSweeper

start_time = datetime.now(timezone.utc)
access_logger = logging.getLogger("valheim_bot.access")
if not access_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    access_logger.addHandler(handler)
    access_logger.setLevel(logging.INFO)
    access_logger.propagate = False

logger = logging.getLogger("valheim_bot")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def build_manager(config: Settings) -> ServerManager:
    return ServerManager(
        config,
        AzureContainerClient(config),
        build_secret_provider(config),
        FollowUpNotifier(config.discord_api_base),
    )


async def resolve_verifier(config: Settings, manager: ServerManager) -> SignatureVerifier:
    public_key = config.discord_public_key
    if not public_key and config.key_vault_name:
        try:
            public_key = await manager.secrets.get_secret(DISCORD_PUBLIC_KEY)
        except ConfigurationError:
            public_key = ""
    if not public_key and not config.allow_unsigned_requests:
        logger.error("DISCORD_PUBLIC_KEY is not configured: rejecting all signed interactions")
    return SignatureVerifier(public_key, allow_unsigned=config.allow_unsigned_requests)


def _parse_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc


def _authenticate(verifier: SignatureVerifier, interaction: Interaction, request: Request, raw_body: bytes) -> None:
    if verifier.verify(request.headers, raw_body):
        return
    # Discord's endpoint check sends an unsigned ping.
    if isinstance(interaction, PingInteraction):
        access_logger.info("ping accepted without a valid signature")
        return
    raise AuthenticationError("Unauthorized")


def create_app(
    config: Settings = settings,
    manager: Optional[ServerManager] = None,
    verifier: Optional[SignatureVerifier] = None,
) -> FastAPI:
    manager = manager or build_manager(config)
    sweeper = AutoShutdownSweeper(config, manager.compute, manager.cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper_task = None
        if config.sweep_enabled:
            sweeper_task = asyncio.create_task(sweeper.run(config.sweep_interval_seconds))
        yield
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        await manager.tasks.shutdown()
        await manager.notifier.close()

    app = FastAPI(title="Valheim Bot", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.manager = manager
    app.state.sweeper = sweeper
    app.state.verifier = verifier
    app.state.dispatcher = CommandDispatcher(
        config.command_name,
        {
            "start": manager.handle_start,
            "stop": manager.handle_stop,
            "status": manager.handle_status,
        },
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Error processing request", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> dict:
        uptime = int((datetime.now(timezone.utc) - start_time).total_seconds())
        return {"status": "healthy", "version": "1.0.0", "uptime": uptime}

    @app.post("/interactions")
    async def handle_interaction(request: Request) -> JSONResponse:
        raw_body = await request.body()
        try:
            interaction = classify(_parse_body(raw_body))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        verifier = app.state.verifier
        if verifier is None:
            verifier = await resolve_verifier(config, manager)
            # Keep looking the key up until one is found.
            if verifier.configured or config.allow_unsigned_requests:
                app.state.verifier = verifier
        try:
            _authenticate(verifier, interaction, request, raw_body)
        except AuthenticationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc

        if isinstance(interaction, PingInteraction):
            return JSONResponse(pong().to_dict())
        if isinstance(interaction, CommandInteraction):
            access_logger.info("command /%s %s", interaction.command_name, interaction.subcommand or "")
            response = await app.state.dispatcher.dispatch(interaction)
        else:
            response = pong()
        return JSONResponse(response.to_dict())

    @app.middleware("http")
    async def access_log_middleware(request: Request, call_next):
        response = await call_next(request)
        client = request.client.host if request.client else "-"
        access_logger.info("%s %s %s %s", client, request.method, request.url.path, response.status_code)
        return response

    return app


app = create_app()


def main() -> None:
    parser = argparse.ArgumentParser(description="Valheim server Discord bot")
    parser.add_argument("--host", default=settings.host, help="Host to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to bind")
    parser.add_argument("--access-log", action="store_true", help="Enable uvicorn access log")
    parser.add_argument("--sweep-once", action="store_true", help="Run one auto-shutdown sweep and exit")
    args = parser.parse_args()

    if args.sweep_once:
        outcome = asyncio.run(app.state.sweeper.sweep_once())
        logger.info("Sweep finished: %s", outcome.value)
        return

    uvicorn.run(
        "valheim_bot.main:app",
        host=args.host,
        port=args.port,
        log_level="info",
        access_log=args.access_log,
    )


if __name__ == "__main__":
    main()
