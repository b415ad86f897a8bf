from pydantic import BaseModel


class RoomConnection(BaseModel):
    connection_id: str
    expires_at: str


class RoomDetailsResponse(BaseModel):
    room_id: str
    online_users_count: int
    connections: list[RoomConnection]
