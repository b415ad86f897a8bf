import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisConnectionRegistry, create_redis_client
from broadcaster import FanoutBroadcaster
from errors import RegistryUnavailable
from logging_config import get_logger, setup_logging
from membership import MembershipManager
from routers.events import events_router, handle_send
from routers.rooms import rooms_router
from transport import LocalWebSocketTransport, PushTransport, build_transport

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(
    registry: Optional[RedisConnectionRegistry] = None,
    transport: Optional[PushTransport] = None,
) -> FastAPI:
    # Client handles are built once per worker and shared by every invocation
    registry = registry or RedisConnectionRegistry(create_redis_client())
    transport = transport or build_transport()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await transport.close()

    app = FastAPI(title="room-fanout", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.registry = registry
    app.state.transport = transport
    app.state.membership = MembershipManager(registry)
    app.state.broadcaster = FanoutBroadcaster(registry, transport)

    app.include_router(events_router)
    app.include_router(rooms_router)

    @app.get("/health")
    def health():
        try:
            registry.ping()
        except RegistryUnavailable:
            return {"ok": False}
        return {"ok": True}

    if isinstance(transport, LocalWebSocketTransport):
        _mount_websocket(app, transport)

    logger.info(f"FastAPI application initialized with {type(transport).__name__}")
    return app


def _mount_websocket(app: FastAPI, transport: LocalWebSocketTransport):
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, room_id: Optional[str] = Query(None, alias="roomId")):
        """WebSocket event source: accept is a connect, each text frame a send, close a disconnect.

        Query parameters:
        - roomId: Optional room to join, defaults to the configured default room
        """
        membership: MembershipManager = app.state.membership
        broadcaster: FanoutBroadcaster = app.state.broadcaster
        connection_id = uuid.uuid4().hex

        # Registry calls block on redis, so they run off the event loop
        try:
            await asyncio.to_thread(membership.register_connection, connection_id, room_id)
        except RegistryUnavailable as e:
            logger.error(f"Rejecting connection {connection_id}, registration failed: {e}")
            await websocket.close(code=1011, reason="Connection registry unavailable")
            return

        await websocket.accept()
        transport.attach(connection_id, websocket)

        try:
            while True:
                data = await websocket.receive_text()
                response = await handle_send(broadcaster, data, connection_id)
                if response.status_code != 200:
                    logger.warning(f"Send from connection {connection_id} failed with {response.status_code}")
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for connection {connection_id}")
        except Exception as e:
            logger.error(f"Error receiving from connection {connection_id}: {e}", exc_info=True)
            await websocket.close(code=1011)
        finally:
            transport.detach(connection_id)
            try:
                await asyncio.to_thread(membership.deregister_connection, connection_id)
            except RegistryUnavailable:
                # The entry expires on its own
                pass


app = create_app()
