import asyncio
from typing import Optional

from backend import RedisConnectionRegistry
from constants import (
    BROADCAST_DEADLINE_SECONDS,
    DEFAULT_ROOM_ID,
    DELIVERY_TIMEOUT_SECONDS,
    MAX_CONCURRENT_DELIVERIES,
)
from errors import RecipientGone, RegistryUnavailable, TransientDeliveryFault
from logging_config import get_logger
from schemas.events import BroadcastReport, Connection, DeliveryOutcome, OutboundMessage, SendRequest
from transport import PushTransport

logger = get_logger(__name__)


class FanoutBroadcaster:
    """Deliver one message to every member of a room and prune members that are gone.

    Only a failure to resolve membership fails a broadcast. Individual
    delivery failures are contained per member: a confirmed-gone member is
    deleted from the registry, a transient failure leaves it registered so a
    later broadcast retries it.
    """

    def __init__(
        self,
        registry: RedisConnectionRegistry,
        transport: PushTransport,
        default_room_id: str = DEFAULT_ROOM_ID,
        delivery_timeout: float = DELIVERY_TIMEOUT_SECONDS,
        deadline: float = BROADCAST_DEADLINE_SECONDS,
        max_concurrency: int = MAX_CONCURRENT_DELIVERIES,
    ):
        self.registry = registry
        self.transport = transport
        self.default_room_id = default_room_id
        self.delivery_timeout = delivery_timeout
        self.deadline = deadline
        self.max_concurrency = max(1, max_concurrency)

    async def broadcast(self, request: SendRequest, deadline: Optional[float] = None) -> BroadcastReport:
        room_id = request.room_id or self.default_room_id
        deadline = self.deadline if deadline is None else deadline

        # Raises RegistryUnavailable; nothing is delivered when membership is unknown
        members = await asyncio.to_thread(self.registry.query_by_room, room_id)
        logger.info(f"Broadcasting to room {room_id}: {len(members)} members, sender {request.user_id!r}")

        payload = OutboundMessage(roomId=room_id, userId=request.user_id, text=request.text).to_bytes()
        report = BroadcastReport(room_id=room_id)
        if not members:
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = {
            asyncio.create_task(self._deliver(member, payload, semaphore)): member.connection_id
            for member in members
        }
        done, pending = await asyncio.wait(tasks, timeout=deadline)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            report.abandoned.extend(sorted(tasks[task] for task in pending))
            logger.warning(
                f"Broadcast to room {room_id} hit its {deadline}s deadline; "
                f"abandoned {len(pending)} of {len(members)} deliveries"
            )

        for task in done:
            report.record(tasks[task], task.result())

        logger.info(
            f"Broadcast to room {room_id} finished: delivered={len(report.delivered)} "
            f"gone={len(report.gone)} transient={len(report.transient)} abandoned={len(report.abandoned)}"
        )
        return report

    async def _deliver(self, member: Connection, payload: bytes, semaphore: asyncio.Semaphore) -> DeliveryOutcome:
        connection_id = member.connection_id
        async with semaphore:
            try:
                await asyncio.wait_for(self.transport.send(connection_id, payload), timeout=self.delivery_timeout)
            except RecipientGone:
                logger.info(f"Connection {connection_id} is gone, pruning it from room {member.room_id}")
                await self._prune(connection_id)
                return DeliveryOutcome.CONFIRMED_GONE
            except asyncio.TimeoutError:
                logger.warning(f"Delivery to {connection_id} timed out after {self.delivery_timeout}s")
                return DeliveryOutcome.TRANSIENT_ERROR
            except TransientDeliveryFault as e:
                logger.warning(f"Delivery to {connection_id} failed: {e}")
                return DeliveryOutcome.TRANSIENT_ERROR
            except Exception as e:
                logger.error(f"Unexpected error delivering to {connection_id}: {e}", exc_info=True)
                return DeliveryOutcome.TRANSIENT_ERROR

        logger.debug(f"Delivered message to {connection_id}")
        return DeliveryOutcome.DELIVERED

    async def _prune(self, connection_id: str):
        try:
            await asyncio.to_thread(self.registry.delete, connection_id)
        except RegistryUnavailable as e:
            # Passive expiry removes the entry eventually
            logger.warning(f"Failed to prune gone connection {connection_id}: {e}")
