REDIS_USERS_KEY = "room:users:{slug}" # room id - set of connection IDs
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name
REDIS_CONN_ROOMS_KEY = "conn:rooms:{connection_id}" # connection id - set of joined room IDs

# **Pub/Sub message envelope**
# - `exclude` = connection id that must not receive the message (the sender)
# - `message` = outbound frame, e.g. {"type": "call-offer", "room_id": ..., "payload": ...}
