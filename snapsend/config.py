"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
APP_ID = "snapsend-v1"
CONFIG_DIR = Path(
    os.environ.get("SNAPSEND_CONFIG_DIR", Path.home() / ".config" / "snapsend")
)
DEVICE_NAME = os.environ.get("SNAPSEND_DEVICE_NAME", platform.node())
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("SNAPSEND_API_PORT", 8765))
RELAY_PORT = int(os.environ.get("SNAPSEND_RELAY_PORT", 5000))
RELAY_URL = os.environ.get("SNAPSEND_RELAY_URL", f"ws://127.0.0.1:{RELAY_PORT}/ws")
DISCOVERY_PORT = 41235  # UDP
DISCOVERY_INTERVAL = 3  # seconds
PEER_TIMEOUT = 10  # seconds before an advertisement expires

TRANSFER_PORT_MIN = 50000
TRANSFER_PORT_MAX = 65000

# Devices with the larger stable id wait this long for an inbound link
# before dialing out themselves.
CONNECT_GRACE = 2 * DISCOVERY_INTERVAL

# Relay liveness: fixed delay, retried forever
RECONNECT_DELAY = 3  # seconds

# --- Transfer ---
CHUNK_SIZE = 1024 * 1024  # 1 MiB of raw bytes per chunk
CHUNK_THRESHOLD = 70 * 1024 * 1024  # payloads above this are chunked
CHUNK_ASSEMBLY_TIMEOUT = float(os.environ.get("SNAPSEND_ASSEMBLY_TIMEOUT", 60))
ASSEMBLY_SWEEP_INTERVAL = 5  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = str(
    os.environ.get("SNAPSEND_SAVE_DIR", Path.home() / "Downloads" / "SnapSend")
)

LOG_LEVEL = os.environ.get("SNAPSEND_LOG_LEVEL", "INFO")
