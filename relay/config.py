"""Configuration settings for the relay server."""

import os
from common.constants import DEFAULT_RATE_LIMIT_BYTES, DEFAULT_STORAGE_LIMIT_BYTES


RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")

RELAY_PORT = int(os.environ.get("RELAY_PORT", "3001"))

# "memory" keeps chunk bytes in process, "disk" writes them under RELAY_STORAGE_PATH
RELAY_STORAGE_BACKEND = os.environ.get("RELAY_STORAGE_BACKEND", "memory")

RELAY_STORAGE_PATH = os.environ.get("RELAY_STORAGE_PATH", "/app/data/sessions")

RELAY_STORAGE_LIMIT_BYTES = int(
    os.environ.get("RELAY_STORAGE_LIMIT_BYTES", str(DEFAULT_STORAGE_LIMIT_BYTES))
)

RELAY_UPLOAD_RATE_LIMIT = int(
    os.environ.get("RELAY_UPLOAD_RATE_LIMIT", str(DEFAULT_RATE_LIMIT_BYTES))
)

RELAY_DOWNLOAD_RATE_LIMIT = int(
    os.environ.get("RELAY_DOWNLOAD_RATE_LIMIT", str(DEFAULT_RATE_LIMIT_BYTES))
)
