# =============================================================================
# MERLIN Bridge -- Protocol Constants
# =============================================================================
#
# Values match the AR bridge server (Jetson) protocol module.
# =============================================================================

PROTOCOL_VERSION = 0x0100

# -- Endpoint -----------------------------------------------------------------

DEFAULT_PORT = 8765
WS_SCHEME = "ws"

# -- Timing (seconds) --------------------------------------------------------

RECONNECT_DELAY = 2.0
CONNECT_TIMEOUT = 5.0
CLOSE_TIMEOUT = 2.0

# -- Capabilities -------------------------------------------------------------

DEFAULT_DEVICE_NAME = "Meta Quest 3"
DEFAULT_TARGET_FPS = 30

# -- Frame metrics ------------------------------------------------------------

FPS_WINDOW_SIZE = 30

# -- Client buffering ---------------------------------------------------------

FRAME_QUEUE_SIZE = 1000  # frames held for the async iterator

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Wire envelope keys ---------------------------------------------------------

KEY_CONNECT = "Connect"
KEY_CONFIGURE_STREAM = "ConfigureStream"
KEY_SUBSCRIBE = "Subscribe"
KEY_CONNECTED = "Connected"
KEY_FRAME = "Frame"

SERVER_VARIANTS = (KEY_CONNECTED, KEY_FRAME)
CLIENT_VARIANTS = (KEY_CONNECT, KEY_CONFIGURE_STREAM, KEY_SUBSCRIBE)

# -- Integer ranges ------------------------------------------------------------

UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFF_FFFF
UINT64_MAX = 0xFFFF_FFFF_FFFF_FFFF
