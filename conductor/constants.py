"""Constants used across the conductor client.

Wire-level names are fixed by the conductor server and are not configurable.
"""

# Durable client state
ENDPOINTS_STORAGE_KEY = "ai_conductor_servers"

# Built-in default endpoint
DEFAULT_ENDPOINT_ID = "local"
DEFAULT_ENDPOINT_NAME = "Local"

# HTTP API
SESSION_TOKEN_HEADER = "X-Session-Token"
WS_TOKEN_PARAM = "token"
WS_PATH_PREFIX = "/ws"

# Reconnect defaults (seconds)
RECONNECT_MAX_ATTEMPTS = 20
RECONNECT_INITIAL_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

# Inline notices written to the renderer
RECONNECTING_NOTICE = "\r\n\x1b[33m[Reconnecting ({attempt}/{max_attempts})...]\x1b[0m\r\n"
CONNECTION_LOST_NOTICE = "\r\n\x1b[31m[Connection lost. Press any key to reconnect.]\x1b[0m\r\n"

# Ctrl-] leaves an attached session, as telnet does
DETACH_KEY = "\x1d"
