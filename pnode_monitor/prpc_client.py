"""
pRPC Directory Client

Asks the seed nodes of the Xandeum network for the current pod list using
the JSON-RPC method get-pods-with-stats. Seeds are tried one at a time in a
random order; the first well-formed answer wins.
"""

import asyncio
import logging
import random
from typing import Any, List, Optional, Sequence

import aiohttp

from .config import SEED_IPS, PRPC_PORT, PRPC_PATH, PRPC_METHOD, PRPC_TIMEOUT
from .models import PodRaw, MalformedPodError, parse_pod_list

log = logging.getLogger("PNodeMonitor.PrpcClient")


class FetchFailure(Exception):
    """Raised when no seed returned a usable pod list."""


def extract_pods(payload: Any) -> Optional[List[PodRaw]]:
    """
    Pull the pod list out of a JSON-RPC response.

    Two shapes are accepted for "result": a bare list of pods, or an object
    with the list under "pods". Returns None if neither parses.
    """
    if not isinstance(payload, dict) or 'result' not in payload:
        return None
    result = payload['result']

    try:
        return parse_pod_list(result)
    except MalformedPodError:
        pass

    if isinstance(result, dict) and 'pods' in result:
        try:
            return parse_pod_list(result['pods'])
        except MalformedPodError as e:
            log.debug(f"Nested pod list is malformed: {e}")
    return None


class PrpcClient:
    """Client for the get-pods-with-stats call with seed failover."""

    def __init__(self, session: aiohttp.ClientSession, seeds: Sequence[str] = SEED_IPS,
                 port: int = PRPC_PORT, timeout: float = PRPC_TIMEOUT):
        self.session = session
        self.seeds = list(seeds)
        self.port = port
        self.timeout = timeout

    def _seed_url(self, seed: str) -> str:
        return f"http://{seed}:{self.port}{PRPC_PATH}"

    async def fetch_pods(self) -> List[PodRaw]:
        """Return the pod list from the first seed that answers with a parseable body."""
        seeds = self.seeds.copy()
        random.shuffle(seeds)

        for seed in seeds:
            pods = await self._fetch_from_seed(seed)
            if pods is not None:
                log.info(f"Fetched {len(pods)} pods from seed {seed}")
                return pods

        raise FetchFailure(f"All {len(seeds)} seed nodes failed")

    async def _fetch_from_seed(self, seed: str) -> Optional[List[PodRaw]]:
        body = {"jsonrpc": "2.0", "method": PRPC_METHOD, "id": 1}
        url = self._seed_url(seed)
        try:
            async with self.session.post(url, json=body,
                                         timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.warning(f"Seed {seed} timed out after {self.timeout}s")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            log.warning(f"Failed to fetch from {seed}: {e}")
            return None

        pods = extract_pods(payload)
        if pods is None:
            log.warning(f"Seed {seed} returned an unexpected response shape")
        return pods
