"""
Geo Enrichment Cache

Maps a bare IP to approximate location using ip-api.com. Results are kept for
the lifetime of the process; failures are not cached so a later refresh can
retry them.
"""

import asyncio
import ipaddress
import logging
from typing import Dict, Optional

import aiohttp

from .config import GEO_LOOKUP_URL, GEO_LOOKUP_DELAY, GEO_LOOKUP_TIMEOUT
from .models import GeoData

log = logging.getLogger("PNodeMonitor.GeoCache")


def is_lookup_exempt(ip: str) -> bool:
    """Empty, loopback and unspecified addresses are never sent to the lookup service."""
    if not ip or ip == 'localhost':
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_unspecified


class GeoCache:
    """
    In-memory IP -> GeoData cache backed by an external lookup.

    The cache dict is only touched from the event loop, so concurrent
    resolve() calls cannot corrupt it. Misses are serialized by _pace_lock:
    each one waits `delay` seconds and sends its request while holding the
    lock, so lookups are at least `delay` apart across all callers. Hits never
    take the lock.
    """

    def __init__(self, session: aiohttp.ClientSession, lookup_url: str = GEO_LOOKUP_URL,
                 delay: float = GEO_LOOKUP_DELAY, timeout: float = GEO_LOOKUP_TIMEOUT):
        self.session = session
        self.lookup_url = lookup_url
        self.delay = delay
        self.timeout = timeout
        self._cache: Dict[str, GeoData] = {}
        self._pace_lock = asyncio.Lock()
        self.lookup_count = 0

    def __len__(self):
        return len(self._cache)

    def __contains__(self, ip: str) -> bool:
        return ip in self._cache

    def get(self, ip: str) -> Optional[GeoData]:
        return self._cache.get(ip)

    async def resolve(self, ip: str) -> Optional[GeoData]:
        if is_lookup_exempt(ip):
            return None

        cached = self._cache.get(ip)
        if cached is not None:
            return cached

        async with self._pace_lock:
            # Filled by another caller while we waited for the lock
            cached = self._cache.get(ip)
            if cached is not None:
                return cached

            # Basic pacing for the free ip-api tier
            await asyncio.sleep(self.delay)
            geo = await self._lookup(ip)
            if geo is not None:
                self._cache[ip] = geo
        return geo

    async def _lookup(self, ip: str) -> Optional[GeoData]:
        self.lookup_count += 1
        url = self.lookup_url.format(ip=ip)
        try:
            async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.warning(f"Geo lookup timed out for {ip}")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            log.warning(f"Geo lookup failed for {ip}: {e}")
            return None

        if not isinstance(data, dict) or data.get('status') != 'success':
            log.debug(f"Geo lookup for {ip} returned no usable result: {data!r:.200}")
            return None

        try:
            return GeoData(
                lat=float(data.get('lat') or 0.0),
                lon=float(data.get('lon') or 0.0),
                country=str(data.get('country') or ''),
                city=str(data.get('city') or ''),
            )
        except (TypeError, ValueError):
            log.warning(f"Geo lookup for {ip} returned malformed coordinates")
            return None
