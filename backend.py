from datetime import datetime, timedelta, timezone
from typing import Optional

import redis

from constants import REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, REGISTRY_TIMEOUT_SECONDS
from errors import RegistryUnavailable
from logging_config import get_logger
from redis_keys import REDIS_CONN_KEY, REDIS_ROOM_CONNECTIONS_KEY
from schemas.events import Connection

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    # No ping here: the client connects lazily, so importing the app never needs a live server
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT} db={REDIS_DB}")
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
        socket_timeout=REGISTRY_TIMEOUT_SECONDS,
        socket_connect_timeout=REGISTRY_TIMEOUT_SECONDS,
    )


class RedisConnectionRegistry:
    """Connection registry keyed by connection id with a secondary index by room.

    Every connection lives in a ``conn:{id}`` hash that Redis expires on its own,
    and its id is a member of exactly one ``room:connections:{room}`` set.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    def _conn_key(self, connection_id: str) -> str:
        return REDIS_CONN_KEY.format(connection_id=connection_id)

    def _room_key(self, room_id: str) -> str:
        return REDIS_ROOM_CONNECTIONS_KEY.format(room_id=room_id)

    def put(self, connection_id: str, room_id: str, expires_at: datetime) -> Connection:
        """Upsert a connection entry; any prior entry for the same id is replaced."""
        connection = Connection(connection_id=connection_id, room_id=room_id, expires_at=expires_at)
        conn_key = self._conn_key(connection_id)
        try:
            prior_room = self.redis_client.hget(conn_key, "room_id")
            pipe = self.redis_client.pipeline(transaction=True)
            if prior_room and prior_room != room_id:
                pipe.srem(self._room_key(prior_room), connection_id)
            pipe.delete(conn_key)
            pipe.hset(conn_key, mapping=connection.to_redis())
            pipe.expireat(conn_key, int(expires_at.timestamp()))
            pipe.sadd(self._room_key(room_id), connection_id)
            pipe.execute()
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to register connection {connection_id} in room {room_id}: {e}")
            raise RegistryUnavailable(f"Failed to register connection {connection_id}") from e

        if prior_room and prior_room != room_id:
            logger.debug(f"Connection {connection_id} moved from room {prior_room} to {room_id}")
        logger.debug(f"Connection {connection_id} stored in room {room_id}, expires at {expires_at.isoformat()}")
        return connection

    def delete(self, connection_id: str) -> bool:
        """Remove a connection entry. Returns False when there was nothing to remove."""
        conn_key = self._conn_key(connection_id)
        try:
            room_id = self.redis_client.hget(conn_key, "room_id")
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.delete(conn_key)
            if room_id:
                pipe.srem(self._room_key(room_id), connection_id)
            results = pipe.execute()
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to delete connection {connection_id}: {e}")
            raise RegistryUnavailable(f"Failed to delete connection {connection_id}") from e

        deleted = bool(results[0])
        logger.debug(f"Connection {connection_id} deleted: entry={deleted}, room={room_id}")
        return deleted

    def query_by_room(self, room_id: str) -> list[Connection]:
        """Return the connections currently registered in ``room_id``.

        Index members whose entry expired or now points at another room are
        left out of the result and dropped from the index.
        """
        room_key = self._room_key(room_id)
        try:
            member_ids = self.redis_client.smembers(room_key)
            if not member_ids:
                return []
            member_ids = sorted(member_ids)
            pipe = self.redis_client.pipeline(transaction=False)
            for connection_id in member_ids:
                pipe.hgetall(self._conn_key(connection_id))
            entries = pipe.execute()

            connections = []
            stale_ids = []
            for connection_id, data in zip(member_ids, entries):
                if not data or data.get("room_id") != room_id:
                    stale_ids.append(connection_id)
                    continue
                connections.append(Connection.from_redis(data))

            if stale_ids:
                self.redis_client.srem(room_key, *stale_ids)
                logger.debug(f"Dropped {len(stale_ids)} stale index members from room {room_id}")
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to query connections in room {room_id}: {e}")
            raise RegistryUnavailable(f"Failed to query room {room_id}") from e

        logger.debug(f"Room {room_id} has {len(connections)} connections")
        return connections

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.exceptions.RedisError as e:
            raise RegistryUnavailable("Registry ping failed") from e


def expires_in(ttl_seconds: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=ttl_seconds)
