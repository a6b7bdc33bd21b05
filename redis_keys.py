REDIS_HISTORY_KEY = "chat:history:{room}" # room name - list of JSON encoded chat messages, oldest first

# **Example `chat:history:{room}` list item**
# - `ts` = milliseconds since epoch
# - `user` = display name, capped
# - `text` = message body, trimmed and capped
# - `cid` = client supplied echo token (optional)
# - `room` = room name
