from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import PlainTextResponse

from broadcaster import FanoutBroadcaster
from errors import MalformedRequest, RegistryUnavailable
from logging_config import get_logger
from membership import MembershipManager
from schemas.events import SendRequest, decode_send_request

logger = get_logger(__name__)

events_router = APIRouter(prefix="/events", tags=["events"])

# The connection id is bound by whatever fronts the sessions (a gateway or proxy)
CONNECTION_ID_HEADER = "X-Connection-Id"


def get_membership(request: Request) -> MembershipManager:
    return request.app.state.membership


def get_broadcaster(request: Request) -> FanoutBroadcaster:
    return request.app.state.broadcaster


@events_router.post("/connect", response_class=PlainTextResponse)
def connect(
    request: Request,
    connection_id: Optional[str] = Header(None, alias=CONNECTION_ID_HEADER),
    room_id: Optional[str] = Query(None, alias="roomId"),
):
    if not connection_id:
        logger.warning("Connect event without a connection id")
        return PlainTextResponse(f"Missing {CONNECTION_ID_HEADER} header", status_code=400)
    try:
        get_membership(request).register_connection(connection_id, room_id)
    except RegistryUnavailable as e:
        return PlainTextResponse(str(e), status_code=500)
    return PlainTextResponse("", status_code=200)


@events_router.post("/disconnect", response_class=PlainTextResponse)
def disconnect(
    request: Request,
    connection_id: Optional[str] = Header(None, alias=CONNECTION_ID_HEADER),
):
    if not connection_id:
        logger.warning("Disconnect event without a connection id")
        return PlainTextResponse(f"Missing {CONNECTION_ID_HEADER} header", status_code=400)
    try:
        get_membership(request).deregister_connection(connection_id)
    except RegistryUnavailable as e:
        return PlainTextResponse(str(e), status_code=500)
    return PlainTextResponse("", status_code=200)


async def handle_send(broadcaster: FanoutBroadcaster, body, connection_id: Optional[str] = None) -> PlainTextResponse:
    """Run a send event end to end; shared by the HTTP route and the websocket loop."""
    try:
        send_request = decode_send_request(body)
    except MalformedRequest as e:
        logger.warning(f"Malformed send body from {connection_id}: {e}; using defaults")
        send_request = SendRequest()

    try:
        await broadcaster.broadcast(send_request)
    except RegistryUnavailable as e:
        logger.error(f"Send from {connection_id} failed, membership could not be resolved: {e}")
        return PlainTextResponse(str(e), status_code=500)
    return PlainTextResponse("ok", status_code=200)


@events_router.post("/send", response_class=PlainTextResponse)
async def send(
    request: Request,
    connection_id: Optional[str] = Header(None, alias=CONNECTION_ID_HEADER),
):
    body = await request.body()
    return await handle_send(get_broadcaster(request), body, connection_id)
