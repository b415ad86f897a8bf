from datetime import datetime
from typing import Optional

from backend import RedisConnectionRegistry, expires_in
from constants import CONNECTION_TTL_SECONDS, DEFAULT_ROOM_ID
from errors import RegistryUnavailable
from logging_config import get_logger
from schemas.events import Connection

logger = get_logger(__name__)


class MembershipManager:
    """Keeps registry membership in step with connect and disconnect events."""

    def __init__(
        self,
        registry: RedisConnectionRegistry,
        default_room_id: str = DEFAULT_ROOM_ID,
        default_ttl: int = CONNECTION_TTL_SECONDS,
    ):
        self.registry = registry
        self.default_room_id = default_room_id
        self.default_ttl = default_ttl

    def register_connection(
        self,
        connection_id: str,
        room_id: Optional[str] = None,
        ttl: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Connection:
        """Upsert ``connection_id`` into ``room_id`` expiring ``ttl`` seconds from now.

        Raises ``RegistryUnavailable`` without retrying; the session is expected
        to reconnect on its own.
        """
        if not connection_id:
            raise ValueError("connection_id must be non-empty")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be a positive number of seconds, got {ttl}")
        room_id = room_id or self.default_room_id

        connection = self.registry.put(connection_id, room_id, expires_in(ttl, now))
        logger.info(f"Connection {connection_id} registered in room {room_id} (ttl {ttl}s)")
        return connection

    def deregister_connection(self, connection_id: str) -> bool:
        """Remove ``connection_id``; removing an unknown id succeeds.

        A registry failure is raised to the caller but is not fatal: the
        entry still expires on its own.
        """
        try:
            deleted = self.registry.delete(connection_id)
        except RegistryUnavailable:
            logger.warning(f"Could not deregister connection {connection_id}; relying on passive expiry")
            raise
        if deleted:
            logger.info(f"Connection {connection_id} deregistered")
        else:
            logger.debug(f"Connection {connection_id} was not registered, nothing to remove")
        return deleted
