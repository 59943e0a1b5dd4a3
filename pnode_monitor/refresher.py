"""
Refresh Orchestrator

Runs the fetch -> enrich -> persist pipeline on a fixed timer:

1. Fetch the pod list from the seeds (a total failure skips the cycle).
2. Write one fleet snapshot with total/online/storage aggregates.
3. Probe latency and resolve geo data for every pod (concurrently).
4. Upsert each node row and append one history sample per node.

Pods without a pubkey count toward the snapshot totals but are not written:
they get no node row and no history sample.

Only one cycle runs at a time inside run_forever(). The timer does not guard
against a cycle that takes longer than the interval; the next tick simply
starts late.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import REFRESH_INTERVAL_SECONDS, ENRICHMENT_CONCURRENCY
from .database import PodStore
from .geo_cache import GeoCache, is_lookup_exempt
from .latency import measure_latency, bare_ip
from .models import GeoData, NodeRecord, PodRaw
from .prpc_client import FetchFailure, PrpcClient

log = logging.getLogger("PNodeMonitor.Refresher")

STATE_IDLE = 'idle'
STATE_RUNNING = 'running'


@dataclass
class CycleResult:
    total_nodes: int
    online_nodes: int
    total_storage: int
    written: int = 0
    failed: int = 0
    skipped: int = 0


def summarize_fleet(pods: List[PodRaw]) -> Tuple[int, int, int]:
    """Return (total, online, total_storage_used) for a pod list."""
    total = len(pods)
    online = sum(1 for pod in pods if pod.is_online)
    storage = sum(pod.storage_used or 0 for pod in pods)
    return total, online, storage


def build_node_record(pod: PodRaw, latency_ms: Optional[int], geo: Optional[GeoData]) -> NodeRecord:
    """Assemble the full replacement row for one pod; absent values stay None."""
    return NodeRecord(
        pubkey=pod.pubkey,
        ip=pod.address or '',
        version=pod.version,
        status='online' if pod.is_online else 'offline',
        last_seen=pod.last_seen_timestamp,
        storage_used=pod.storage_used,
        storage_committed=pod.storage_committed,
        storage_usage_percent=pod.storage_usage_percent,
        credits=None,
        latency_ms=latency_ms,
        country=geo.country if geo else None,
        city=geo.city if geo else None,
        lat=geo.lat if geo else None,
        lon=geo.lon if geo else None,
    )


class FleetRefresher:
    """Producer side of the monitor. Dependencies are injected so a single cycle can run in isolation."""

    def __init__(self, prpc_client: PrpcClient, store: PodStore, geo_cache: GeoCache,
                 probe: Callable[[str], Awaitable[Optional[int]]] = measure_latency,
                 interval: float = REFRESH_INTERVAL_SECONDS,
                 concurrency: int = ENRICHMENT_CONCURRENCY):
        self.prpc_client = prpc_client
        self.store = store
        self.geo_cache = geo_cache
        self.probe = probe
        self.interval = interval
        self.concurrency = max(1, concurrency)
        self.state = STATE_IDLE
        self.cycles_completed = 0
        self.last_result: Optional[CycleResult] = None

    async def run_forever(self, stop_event: asyncio.Event):
        """Tick every `interval` seconds until stop_event is set. The first tick is immediate."""
        log.info(f"Refresh task started (interval {self.interval}s).")
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not stop_event.is_set():
            self.state = STATE_RUNNING
            try:
                await self.run_cycle(stop_event)
            except Exception:
                log.error("Unexpected error during refresh cycle:", exc_info=True)
            finally:
                self.state = STATE_IDLE

            next_tick += self.interval
            delay = max(0.0, next_tick - loop.time())
            if delay == 0.0:
                # Running behind; restart the schedule from now
                next_tick = loop.time()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        log.info("Refresh task stopped.")

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> Optional[CycleResult]:
        """Run one refresh. Returns None when the cycle was skipped or stopped early."""
        log.info("Refreshing data...")

        def stopped() -> bool:
            return stop_event is not None and stop_event.is_set()

        try:
            pods = await self.prpc_client.fetch_pods()
        except FetchFailure as e:
            log.warning(f"Skipping refresh cycle: {e}")
            return None
        if stopped():
            return None

        total, online, storage = summarize_fleet(pods)
        result = CycleResult(total_nodes=total, online_nodes=online, total_storage=storage)
        try:
            await self.store.write_fleet_snapshot(total, online, storage)
        except Exception:
            log.error("Failed to save fleet snapshot:", exc_info=True)

        enrichments = await self._enrich_all(pods)
        if stopped():
            return None

        for pod, (latency_ms, geo) in zip(pods, enrichments):
            if stopped():
                return None
            if not pod.pubkey:
                log.warning(f"Skipping pod without pubkey (address={pod.address!r})")
                result.skipped += 1
                continue
            if await self._persist_node(build_node_record(pod, latency_ms, geo)):
                result.written += 1
            else:
                result.failed += 1

        self.cycles_completed += 1
        self.last_result = result
        log.info(f"Refresh complete: {total} pods ({online} online), {result.written} written, "
                 f"{result.failed} failed, {result.skipped} skipped.")
        return result

    async def _enrich_all(self, pods: List[PodRaw]) -> List[Tuple[Optional[int], Optional[GeoData]]]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def enrich(pod: PodRaw) -> Tuple[Optional[int], Optional[GeoData]]:
            ip = bare_ip(pod.address)
            if not ip:
                return None, None
            async with semaphore:
                latency_ms = await self.probe(pod.address)
                geo = None
                if not is_lookup_exempt(ip):
                    # Keep the measured latency if the lookup fails
                    try:
                        geo = await self.geo_cache.resolve(ip)
                    except Exception as e:
                        log.warning(f"Geo lookup failed for {ip}: {e}")
            return latency_ms, geo

        results = await asyncio.gather(*(enrich(pod) for pod in pods), return_exceptions=True)
        enrichments = []
        for pod, outcome in zip(pods, results):
            if isinstance(outcome, Exception):
                log.warning(f"Enrichment failed for {pod.address!r}: {outcome}")
                outcome = (None, None)
            enrichments.append(outcome)
        return enrichments

    async def _persist_node(self, record: NodeRecord) -> bool:
        """Upsert the node row, then append its history sample. The sample is written even if the upsert failed."""
        ok = True
        try:
            await self.store.upsert_node(record)
        except Exception:
            log.error(f"Failed to upsert node {record.pubkey}:", exc_info=True)
            ok = False
        try:
            await self.store.write_node_history(record.pubkey, record.latency_ms, record.status)
        except Exception:
            log.error(f"Failed to save node history for {record.pubkey}:", exc_info=True)
            ok = False
        return ok
