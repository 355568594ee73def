"""
HTTP and WebSocket API for the cloud manager.

Thin marshaling over the lifecycle controller and the proxy reconciler. The
services live on app.state (opened in the lifespan) and reach handlers
through dependency getters so tests can swap them out.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import HTTPConnection

from mcm_common.config import Settings
from mcm_common.errors import FleetError
from mcm_controller.container_manager import ContainerManager
from mcm_controller.proxy_reconciler import ProxyReconciler
from mcm_controller.server_controller import ServerController
from mcm_controller.services import Services, open_services

from .schemas import (
    CommandRequest,
    CreateServerRequest,
    UpdateProxyRequest,
    UpdateServerRequest,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def get_services(conn: HTTPConnection) -> Services:
    """
    Get the services opened by the lifespan.

    Raises:
        RuntimeError: If the app has not started
    """
    services = getattr(conn.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services


def get_controller(services: Services = Depends(get_services)) -> ServerController:
    return services.controller


def get_reconciler(services: Services = Depends(get_services)) -> ProxyReconciler:
    return services.reconciler


router = APIRouter(prefix=API_PREFIX)


# Servers


@router.post("/servers", status_code=201)
async def create_server(
    body: CreateServerRequest,
    controller: ServerController = Depends(get_controller),
) -> dict[str, Any]:
    """
    Create a server (container + volume) without starting it.

    If a proxy exists the server is configured to sit behind it and the
    routing file is refreshed.
    """
    server = await controller.create_server(
        body.name, max_players=body.max_players, motd=body.motd, version=body.version
    )
    return server.to_dict()


@router.get("/servers")
async def list_servers(
    controller: ServerController = Depends(get_controller),
) -> list[dict[str, Any]]:
    servers = await controller.list_servers()
    return [server.to_dict() for server in servers]


@router.get("/servers/{server_id}")
async def get_server(
    server_id: str, controller: ServerController = Depends(get_controller)
) -> dict[str, Any]:
    server = await controller.get_server(server_id)
    return server.to_dict()


@router.patch("/servers/{server_id}")
async def update_server(
    server_id: str,
    body: UpdateServerRequest,
    controller: ServerController = Depends(get_controller),
) -> dict[str, Any]:
    server = await controller.update_server(
        server_id, max_players=body.max_players, motd=body.motd, version=body.version
    )
    return server.to_dict()


@router.delete("/servers/{server_id}")
async def delete_server(
    server_id: str, controller: ServerController = Depends(get_controller)
) -> dict[str, Any]:
    """Delete a server, its container and its volume. Returns the deleted record."""
    server = await controller.delete_server(server_id)
    return server.to_dict()


@router.post("/servers/{server_id}/start")
async def start_server(
    server_id: str, controller: ServerController = Depends(get_controller)
) -> dict[str, Any]:
    server = await controller.start_server(server_id)
    return server.to_dict()


@router.post("/servers/{server_id}/stop")
async def stop_server(
    server_id: str, controller: ServerController = Depends(get_controller)
) -> dict[str, Any]:
    server = await controller.stop_server(server_id)
    return server.to_dict()


@router.post("/servers/{server_id}/command")
async def execute_command(
    server_id: str,
    body: CommandRequest,
    controller: ServerController = Depends(get_controller),
) -> dict[str, str]:
    output = await controller.execute_command(server_id, body.command)
    return {"output": output}


@router.get("/servers/{server_id}/logs")
async def get_server_logs(
    server_id: str,
    follow: bool = False,
    tail: str = "100",
    controller: ServerController = Depends(get_controller),
) -> StreamingResponse:
    """
    Server console output as plain text.

    Clients that want interactive streaming open a WebSocket on the same path.
    """
    await controller.get_server(server_id)

    async def lines() -> AsyncGenerator[str, None]:
        try:
            async for line in controller.stream_logs(server_id, follow=follow, tail=tail):
                yield line
        except FleetError as e:
            yield f"Error streaming logs: {e}\n"

    return StreamingResponse(lines(), media_type="text/plain")


@router.websocket("/servers/{server_id}/logs")
async def server_console(
    websocket: WebSocket,
    server_id: str,
    follow: bool = True,
    tail: str = "100",
    services: Services = Depends(get_services),
):
    """
    Interactive console: streams logs and accepts commands.

    Client messages: {"type": "command", "command": "..."}
    Server messages: {"type": "log" | "command_result" | "error", "content": "..."}

    The channel closes when the log stream ends or the client disconnects,
    whichever happens first.
    """
    controller = services.controller
    await websocket.accept()
    logger.info(f"Console connected for server {server_id}")

    try:
        await controller.get_server(server_id)
    except FleetError as e:
        await websocket.send_json({"type": "error", "content": str(e)})
        await websocket.close()
        return

    async def pump_logs() -> None:
        try:
            async for line in controller.stream_logs(server_id, follow=follow, tail=tail):
                await websocket.send_json({"type": "log", "content": line})
        except FleetError as e:
            await websocket.send_json(
                {"type": "error", "content": f"Error streaming logs: {e}"}
            )

    async def read_commands() -> None:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "content": "Invalid JSON message"})
                continue

            if not isinstance(message, dict) or message.get("type") != "command":
                await websocket.send_json(
                    {"type": "error", "content": "Unsupported message type"}
                )
                continue

            try:
                output = await controller.execute_command(server_id, message.get("command", ""))
            except FleetError as e:
                await websocket.send_json({"type": "error", "content": str(e)})
                continue
            await websocket.send_json({"type": "command_result", "content": output})

    tasks = {asyncio.create_task(pump_logs()), asyncio.create_task(read_commands())}
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    disconnected = False
    for task in done:
        exc = task.exception()
        if isinstance(exc, WebSocketDisconnect):
            disconnected = True
        elif exc is not None:
            logger.error(f"Console for server {server_id} failed: {exc}", exc_info=exc)

    logger.info(f"Console closed for server {server_id}")
    if not disconnected:
        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass


# Proxy


@router.get("/proxy")
async def get_proxy(reconciler: ProxyReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    """Get the proxy, creating it on first access."""
    proxy = await reconciler.get_proxy()
    return proxy.to_dict()


@router.patch("/proxy")
async def update_proxy(
    body: UpdateProxyRequest, reconciler: ProxyReconciler = Depends(get_reconciler)
) -> dict[str, Any]:
    proxy = await reconciler.update_proxy(body.default_server_id)
    return proxy.to_dict()


@router.post("/proxy/start")
async def start_proxy(reconciler: ProxyReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    proxy = await reconciler.start_proxy()
    return proxy.to_dict()


@router.post("/proxy/stop")
async def stop_proxy(reconciler: ProxyReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    proxy = await reconciler.stop_proxy()
    return proxy.to_dict()


@router.post("/proxy/regenerate-config")
async def regenerate_proxy_config(
    reconciler: ProxyReconciler = Depends(get_reconciler),
) -> dict[str, str]:
    """Rebuild the routing file from the registry and deploy it to the proxy."""
    document = await reconciler.regenerate_config()
    return {"message": "Proxy configuration regenerated", "config": document}


async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


def create_app(
    settings: Settings | None = None,
    container_manager: ContainerManager | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration; read from the environment at startup if omitted
        container_manager: Runtime provider override (defaults to the docker CLI)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for FastAPI app.

        - Startup: Open the database (creating the schema) and wire services
        - Shutdown: Close database connections
        """
        resolved = settings or Settings.from_env()
        services = await open_services(resolved, container_manager)
        app.state.services = services

        yield

        await services.close()
        app.state.services = None

    app = FastAPI(title="Minecraft Cloud Manager", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f} ms)"
        )
        return response

    app.add_exception_handler(FleetError, fleet_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """
        Health check endpoint.

        Returns:
            Dictionary with status="healthy" if server is running
        """
        return {"status": "healthy"}

    app.include_router(router)
    return app


app = create_app()
