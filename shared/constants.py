"""
Shared constants used across the player.
"""

# Application identity
APP_NAME = "cadence-player"
ENV_PREFIX = "CADENCE_"

# Configuration paths
DEFAULT_CONFIG_DIR = "~/.config/cadence-player"
DEFAULT_CACHE_DIR = "~/.cache/cadence-player"
CONFIG_FILENAME = "config.json"
LIBRARY_STORE_FILENAME = "library_store.json"

# Sync API
DEFAULT_API_BASE_URL = "https://wrapifyapi.dedyn.io"
STREAM_PATH = "stream"
PLAYLIST_PATH = "playlist"
SYNC_PLAYLIST_PATH = "syncplaylist"
SYNC_STATUS_PATH = "syncstatus"
RESYNC_PATH = "resync"

# Network Settings
DEFAULT_NETWORK_TIMEOUT = 30  # seconds
DEFAULT_PROBE_TIMEOUT = 5  # seconds
DEFAULT_DOWNLOAD_CHUNK_SIZE = 64 * 1024  # bytes
HTTP_ADAPTER_RETRIES = 3

# Cache settings
DEFAULT_CACHE_SIZE_GB = 2.0
CACHE_MEDIA_DIRNAME = "media"
CACHE_INDEX_FILENAME = "cache_index.db"
DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_BACKOFF_SECONDS = (1, 2, 4)

# Playback timing (seconds)
ENGINE_SETUP_TIMEOUT = 15.0
STALL_CHECK_INTERVAL = 5.0
STALL_THRESHOLD_PERCENT = 10
STALL_RESUME_DELAY = 0.3
SKIP_GUARD_TIMEOUT = 3.0
SKIP_RELEASE_DELAY = 0.3
SKIP_RETRY_DELAY = 0.5
CONNECTIVITY_CHECK_INTERVAL = 60.0
BACKGROUND_WATCHDOG_INTERVAL = 15.0

# Playback retry (2, 4, 8, 16, 32 seconds)
MAX_PLAYBACK_RETRIES = 5

# Look-ahead pre-caching
LOOKAHEAD_FOREGROUND = 2
LOOKAHEAD_BACKGROUND = 5

# Sync job polling
SYNC_POLL_INTERVAL = 10.0
SYNC_POLL_MAX_ATTEMPTS = 30
SYNC_POLL_MAX_ERRORS = 5
SYNC_JOB_HISTORY_LIMIT = 20

# Substrings that identify connectivity failures in engine/HTTP error messages
NETWORK_ERROR_SIGNATURES = (
    "socketexception",
    "connection refused",
    "connection reset",
    "connection aborted",
    "network is unreachable",
    "failed host lookup",
    "name or service not known",
    "temporary failure in name resolution",
    "no address associated",
    "timed out",
    "network unavailable",
    "httpexception",
)
