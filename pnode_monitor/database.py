import asyncio
import contextlib
import logging
import time
from concurrent.futures import Executor
from typing import List, Dict, Any, Optional

from .config import (DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY,
                     FLEET_HISTORY_LIMIT, NODE_HISTORY_LIMIT)
from .db_utils import retry_on_db_lock, get_optimized_connection
from .models import NodeRecord

log = logging.getLogger("PNodeMonitor.Database")

# Each write below is its own transaction. The snapshot, node rows and history
# rows of one refresh cycle are not grouped, so a reader can see a snapshot that
# does not match the node table yet.


def init_db(db_path: str):
    """Create tables and indexes. Safe to run on every startup."""
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # --- Current node state, one row per pubkey ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS nodes (
                pubkey TEXT PRIMARY KEY,
                ip TEXT NOT NULL,
                version TEXT,
                status TEXT,
                last_seen INTEGER,
                storage_used INTEGER,
                storage_committed INTEGER,
                storage_usage_percent REAL,
                credits INTEGER,
                latency_ms INTEGER,
                country TEXT,
                city TEXT,
                lat REAL,
                lon REAL
            )
        ''')

        # --- Fleet snapshots, one row per successful refresh ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                total_nodes INTEGER,
                online_nodes INTEGER,
                total_storage INTEGER
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics (timestamp);')

        # --- Per-node history, one row per node per refresh ---
        # No cascading delete: samples outlive any rewrite of the node row.
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS node_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pubkey TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                latency_ms INTEGER,
                status TEXT
            )
        ''')
        cursor.execute(
            'CREATE INDEX IF NOT EXISTS idx_node_history_pubkey_timestamp ON node_history (pubkey, timestamp);')

        conn.commit()
    log.info("Database schema is valid and ready.")


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_upsert_node(db_path: str, record: NodeRecord):
    """Insert or fully replace the row for record.pubkey. Fields missing from the record are nulled."""
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        with conn:
            conn.execute('''
                INSERT INTO nodes (pubkey, ip, version, status, last_seen, storage_used, storage_committed,
                                   storage_usage_percent, credits, latency_ms, country, city, lat, lon)
                VALUES (:pubkey, :ip, :version, :status, :last_seen, :storage_used, :storage_committed,
                        :storage_usage_percent, :credits, :latency_ms, :country, :city, :lat, :lon)
                ON CONFLICT(pubkey) DO UPDATE SET
                    ip = excluded.ip,
                    version = excluded.version,
                    status = excluded.status,
                    last_seen = excluded.last_seen,
                    storage_used = excluded.storage_used,
                    storage_committed = excluded.storage_committed,
                    storage_usage_percent = excluded.storage_usage_percent,
                    credits = excluded.credits,
                    latency_ms = excluded.latency_ms,
                    country = excluded.country,
                    city = excluded.city,
                    lat = excluded.lat,
                    lon = excluded.lon
            ''', record.to_row())


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_write_fleet_snapshot(db_path: str, total_nodes: int, online_nodes: int, total_storage: int,
                                  timestamp: Optional[int] = None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        with conn:
            conn.execute(
                'INSERT INTO metrics (timestamp, total_nodes, online_nodes, total_storage) VALUES (?, ?, ?, ?)',
                (timestamp, total_nodes, online_nodes, total_storage))
    log.debug(f"Fleet snapshot written: total={total_nodes}, online={online_nodes}, storage={total_storage}")


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_write_node_history(db_path: str, pubkey: str, latency_ms: Optional[int], status: Optional[str],
                                timestamp: Optional[int] = None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        with conn:
            conn.execute(
                'INSERT INTO node_history (pubkey, timestamp, latency_ms, status) VALUES (?, ?, ?, ?)',
                (pubkey, timestamp, latency_ms, status))


def blocking_get_all_nodes(db_path: str) -> List[NodeRecord]:
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        rows = conn.execute('SELECT * FROM nodes').fetchall()
    return [NodeRecord.from_row(row) for row in rows]


def blocking_find_node(db_path: str, needle: str) -> Optional[NodeRecord]:
    """Return the node whose pubkey equals needle, else the first whose address contains it."""
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        row = conn.execute('SELECT * FROM nodes WHERE pubkey = ?', (needle,)).fetchone()
        if row is None:
            # instr() keeps '%' and '_' in the needle literal
            row = conn.execute('SELECT * FROM nodes WHERE instr(ip, ?) > 0 ORDER BY rowid LIMIT 1',
                               (needle,)).fetchone()
    return NodeRecord.from_row(row) if row else None


def blocking_get_fleet_history(db_path: str, limit: int = FLEET_HISTORY_LIMIT) -> List[Dict[str, Any]]:
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        rows = conn.execute('''
            SELECT timestamp, total_nodes, online_nodes, total_storage FROM metrics
            ORDER BY timestamp DESC, id DESC LIMIT ?
        ''', (limit,)).fetchall()
    return [dict(row) for row in rows]


def blocking_get_node_history(db_path: str, pubkey: str, limit: int = NODE_HISTORY_LIMIT) -> List[Dict[str, Any]]:
    with contextlib.closing(get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)) as conn:
        rows = conn.execute('''
            SELECT timestamp, latency_ms, status FROM node_history
            WHERE pubkey = ? ORDER BY timestamp DESC, id DESC LIMIT ?
        ''', (pubkey, limit)).fetchall()
    return [dict(row) for row in rows]


class PodStore:
    """
    Async facade over the blocking functions above.

    Every call is dispatched to the given executor so SQLite never blocks the
    event loop. One instance is created at startup and shared by the refresher
    and the API handlers.
    """

    def __init__(self, db_path: str, executor: Executor):
        self.db_path = db_path
        self.executor = executor

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, self.db_path, *args)

    async def init(self):
        await self._run(init_db)

    async def upsert_node(self, record: NodeRecord):
        await self._run(blocking_upsert_node, record)

    async def write_fleet_snapshot(self, total_nodes: int, online_nodes: int, total_storage: int,
                                   timestamp: Optional[int] = None):
        await self._run(blocking_write_fleet_snapshot, total_nodes, online_nodes, total_storage, timestamp)

    async def write_node_history(self, pubkey: str, latency_ms: Optional[int], status: Optional[str],
                                 timestamp: Optional[int] = None):
        await self._run(blocking_write_node_history, pubkey, latency_ms, status, timestamp)

    async def get_all_nodes(self) -> List[NodeRecord]:
        return await self._run(blocking_get_all_nodes)

    async def find_node(self, needle: str) -> Optional[NodeRecord]:
        return await self._run(blocking_find_node, needle)

    async def get_fleet_history(self, limit: int = FLEET_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        return await self._run(blocking_get_fleet_history, limit)

    async def get_node_history(self, pubkey: str, limit: int = NODE_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        return await self._run(blocking_get_node_history, pubkey, limit)
