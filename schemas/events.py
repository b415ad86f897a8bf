from datetime import datetime, timezone
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import MalformedRequest


class Connection(BaseModel):
    connection_id: str
    room_id: str
    expires_at: datetime

    @classmethod
    def from_redis(cls, data: dict) -> "Connection":
        return cls(
            connection_id=data["connection_id"],
            room_id=data["room_id"],
            expires_at=datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc),
        )

    def to_redis(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "room_id": self.room_id,
            "expires_at": str(int(self.expires_at.timestamp())),
        }


class SendRequest(BaseModel):
    """Body of a send event: {action, roomId?, text, userId}."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = ""
    room_id: str = Field(default="", alias="roomId")
    text: str = ""
    user_id: str = Field(default="", alias="userId")

    @field_validator("action", "room_id", "text", "user_id", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        # An explicit null means the same as an absent field
        return "" if value is None else value


def decode_send_request(body: Union[str, bytes, None]) -> SendRequest:
    if not body:
        return SendRequest()
    try:
        return SendRequest.model_validate_json(body)
    except ValidationError as e:
        raise MalformedRequest(f"Unparseable send body: {e.error_count()} error(s)") from e


class OutboundMessage(BaseModel):
    """Payload pushed to every member of a room."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = "message"
    room_id: str = Field(alias="roomId")
    user_id: str = Field(alias="userId")
    text: str

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    CONFIRMED_GONE = "confirmed_gone"
    TRANSIENT_ERROR = "transient_error"


class BroadcastReport(BaseModel):
    room_id: str
    delivered: list[str] = []
    gone: list[str] = []
    transient: list[str] = []
    # Members whose delivery was still pending when the deadline hit
    abandoned: list[str] = []

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.gone) + len(self.transient) + len(self.abandoned)

    def record(self, connection_id: str, outcome: DeliveryOutcome):
        if outcome is DeliveryOutcome.DELIVERED:
            self.delivered.append(connection_id)
        elif outcome is DeliveryOutcome.CONFIRMED_GONE:
            self.gone.append(connection_id)
        else:
            self.transient.append(connection_id)
