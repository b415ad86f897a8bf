REDIS_CONN_KEY = "conn:{connection_id}" # connection id - registry entry hash
REDIS_ROOM_CONNECTIONS_KEY = "room:connections:{room_id}" # room id - set of connection IDs (room index)

# **Example `conn:{id}` hash fields**
# - `connection_id` = `{connectionId}`
# - `room_id` = room the connection belongs to
# - `expires_at` = unix timestamp, mirrored by the key's Redis expiry

# The room index carries no expiry of its own. Members whose `conn:{id}` hash
# has expired or moved to another room are dropped on the next room query.
