import os

# --- Configuration ---
# Storage connection string. Accepts "sqlite:path", "sqlite:///path" or a bare
# file path. Relative paths are created in the current working directory.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:xandeum.db')


def database_path_from_url(url: str) -> str:
    """Turn a sqlite connection string into a file path usable by sqlite3."""
    for prefix in ('sqlite:///', 'sqlite://', 'sqlite:'):
        if url.startswith(prefix):
            return url[len(prefix):] or 'xandeum.db'
    return url


DATABASE_FILE = database_path_from_url(DATABASE_URL)

SERVER_HOST = "0.0.0.0"
SERVER_PORT = int(os.getenv('PORT', '3001'))
SERVICE_NAME = "xandeum-pnode-monitor"
SERVICE_VERSION = "1.0.0"

# --- Refresh Cycle ---
REFRESH_INTERVAL_SECONDS = 30  # Fixed; not exposed as an environment override
ENRICHMENT_CONCURRENCY = 8  # Pods probed / geolocated at the same time

# --- pRPC Seed Nodes ---
SEED_IPS = [
    "173.212.203.145",
    "173.212.220.65",
    "161.97.97.41",
    "192.190.136.36",
    "192.190.136.37",
    "192.190.136.38",
    "192.190.136.28",
    "192.190.136.29",
    "207.244.255.1",
]
PRPC_PORT = 6000
PRPC_PATH = "/rpc"
PRPC_METHOD = "get-pods-with-stats"
PRPC_TIMEOUT = 5  # seconds

# --- Latency Probe ---
PROBE_TIMEOUT = 2.0  # seconds

# --- Geo Enrichment ---
GEO_LOOKUP_URL = "http://ip-api.com/json/{ip}"
GEO_LOOKUP_DELAY = 0.1  # seconds to wait before every uncached lookup (ip-api rate limit)
GEO_LOOKUP_TIMEOUT = 10  # seconds

# --- Credits Proxy ---
CREDITS_URL = "https://podcredits.xandeum.network/api/pods-credits"
CREDITS_TIMEOUT = 10  # seconds

# --- Query Limits ---
FLEET_HISTORY_LIMIT = 1440  # 12 hours of 30s snapshots
NODE_HISTORY_LIMIT = 100

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)
