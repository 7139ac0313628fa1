"""Application-wide configuration constants."""

import os
import uuid
from pathlib import Path

# --- Identity ---
APP_ID = "heartlink-v1"
CONFIG_DIR = Path.home() / ".heartlink"

# Generate a persistent device ID (stored in a local file), used when the
# auth layer has not supplied a user ID.
_ID_FILE = CONFIG_DIR / "device_id"
try:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    if _ID_FILE.exists():
        DEVICE_ID = _ID_FILE.read_text().strip()
    else:
        DEVICE_ID = str(uuid.uuid4())
        _ID_FILE.write_text(DEVICE_ID)
except OSError:
    DEVICE_ID = str(uuid.uuid4())

USER_ID = os.environ.get("HEARTLINK_USER_ID", DEVICE_ID)
USER_NAME = os.environ.get("HEARTLINK_USER_NAME", "")

# --- Remote store ---
# Firebase Realtime Database root, e.g. "https://example-default-rtdb.firebaseio.com".
# Empty means the in-process store.
STORE_URL = os.environ.get("HEARTLINK_STORE_URL", "")
STORE_AUTH = os.environ.get("HEARTLINK_STORE_AUTH", "")
STORE_TIMEOUT = 10.0  # seconds per request
TRANSACTION_MAX_RETRIES = 25
STREAM_RECONNECT_DELAY = 3  # seconds

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = 8765

# --- Liveness ---
POLL_INTERVAL = 15  # seconds between status polls
HEARTBEAT_TIMEOUT = 60  # seconds without a heartbeat before a peer is "terminated"
HEARTBEAT_REFRESH_INTERVAL = 20  # seconds between our own AppStatus refreshes

# --- Pulse ---
TICK_DIVISOR = 10  # check ticks per beat interval
SECONDARY_PULSE_FRACTION = 0.15  # secondary pulse offset, fraction of an interval
PULSE_LATCH_FRACTION = 0.5  # is_animating hold time, fraction of an interval
RATE_STALE_AFTER = 300  # seconds without a rate update before pausing

# --- Heart rate publishing ---
PUBLISH_INTERVAL = 3  # seconds
PUBLISH_REFRESH_AFTER = 60  # re-upload an unchanged rate after this many seconds
MIN_HEART_RATE = 0
MAX_HEART_RATE = 250
