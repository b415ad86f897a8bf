from typing import Dict, Optional

import httpx
from fastapi import WebSocket, WebSocketDisconnect

from constants import DELIVERY_TIMEOUT_SECONDS, PUSH_ENDPOINT, PUSH_TRANSPORT
from errors import RecipientGone, TransientDeliveryFault
from logging_config import get_logger

logger = get_logger(__name__)

GONE_ERROR_CODE = "GoneException"


class PushTransport:
    """Unicast an opaque payload to one connection.

    ``send`` returns on success, raises ``RecipientGone`` when the connection
    no longer exists and ``TransientDeliveryFault`` for every other failure.
    """

    async def send(self, connection_id: str, payload: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class GatewayPushTransport(PushTransport):
    """Post payloads to a connection-management endpoint: POST {endpoint}/@connections/{id}."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        auth: Optional[httpx.Auth] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not endpoint and client is None:
            raise ValueError("PUSH_ENDPOINT must be configured for the gateway transport")
        self.endpoint = endpoint.rstrip("/")
        self.client = client or httpx.AsyncClient(base_url=self.endpoint, timeout=timeout, auth=auth)
        logger.info(f"Gateway push transport targeting {self.endpoint}")

    @staticmethod
    def _is_gone(response: httpx.Response) -> bool:
        if response.status_code == 410:
            return True
        error_type = response.headers.get("x-amzn-errortype", "")
        if error_type.split(":")[0] == GONE_ERROR_CODE:
            return True
        try:
            body = response.json()
        except ValueError:
            return False
        return isinstance(body, dict) and GONE_ERROR_CODE in (body.get("__type"), body.get("code"))

    async def send(self, connection_id: str, payload: bytes) -> None:
        path = f"/@connections/{connection_id}"
        try:
            response = await self.client.post(path, content=payload)
        except httpx.TimeoutException as e:
            raise TransientDeliveryFault(connection_id, f"Timed out posting to {connection_id}") from e
        except httpx.HTTPError as e:
            raise TransientDeliveryFault(connection_id, f"Transport error posting to {connection_id}: {e}") from e

        if response.is_success:
            return
        if self._is_gone(response):
            raise RecipientGone(connection_id, f"Connection {connection_id} is gone")
        raise TransientDeliveryFault(
            connection_id, f"Push to {connection_id} failed with status {response.status_code}"
        )

    async def close(self) -> None:
        await self.client.aclose()


class LocalWebSocketTransport(PushTransport):
    """Push over websockets accepted by this process.

    Gone is only reported for a socket attached here that has closed. An id
    held by another worker, or registered through the HTTP events, is a
    transient fault and stays registered until it expires or disconnects.
    """

    def __init__(self):
        # Format: {connection_id: websocket}
        self.sockets: Dict[str, WebSocket] = {}

    def attach(self, connection_id: str, websocket: WebSocket):
        self.sockets[connection_id] = websocket
        logger.debug(f"Attached websocket for connection {connection_id} (local sockets: {len(self.sockets)})")

    def detach(self, connection_id: str):
        if self.sockets.pop(connection_id, None) is not None:
            logger.debug(f"Detached websocket for connection {connection_id}")

    async def send(self, connection_id: str, payload: bytes) -> None:
        websocket = self.sockets.get(connection_id)
        if websocket is None:
            raise TransientDeliveryFault(connection_id, f"Connection {connection_id} is not attached to this worker")
        try:
            await websocket.send_text(payload.decode("utf-8"))
        except (WebSocketDisconnect, RuntimeError) as e:
            # Starlette raises RuntimeError once the socket has been closed
            self.detach(connection_id)
            raise RecipientGone(connection_id, f"Connection {connection_id} closed") from e
        except Exception as e:
            raise TransientDeliveryFault(connection_id, f"Websocket send to {connection_id} failed: {e}") from e


def build_transport(kind: str = PUSH_TRANSPORT, endpoint: str = PUSH_ENDPOINT) -> PushTransport:
    if kind == "gateway":
        return GatewayPushTransport(endpoint)
    if kind == "local":
        return LocalWebSocketTransport()
    raise ValueError(f"Unknown PUSH_TRANSPORT {kind!r}; expected 'local' or 'gateway'")
