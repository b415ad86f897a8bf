from fastapi import APIRouter, HTTPException, Request

from errors import RegistryUnavailable
from logging_config import get_logger
from schemas.rooms import RoomConnection, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
def get_room_details(room_id: str, request: Request):
    """
    Get the connections currently registered in a room.

    Returns:
    - room_id: Room identifier
    - online_users_count: Number of registered connections
    - connections: Connection ids with their expiry timestamps
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    try:
        connections = request.app.state.registry.query_by_room(room_id)
    except RegistryUnavailable as e:
        logger.error(f"Room details failed for {room_id}: {e}")
        raise HTTPException(status_code=500, detail="Connection registry unavailable")

    return RoomDetailsResponse(
        room_id=room_id,
        online_users_count=len(connections),
        connections=[
            RoomConnection(connection_id=c.connection_id, expires_at=c.expires_at.isoformat())
            for c in connections
        ],
    )
