"""
Latency Prober

Measures how long it takes to open a TCP connection to a pNode.
"""

import asyncio
import contextlib
import logging
import time
from typing import Optional, Tuple

from .config import PROBE_TIMEOUT

log = logging.getLogger("PNodeMonitor.Latency")


def split_host_port(address: str) -> Tuple[str, Optional[int]]:
    """
    Split "host:port" (or "[v6]:port") into its parts.

    The port is None when the address does not carry a usable one; no default
    port is ever substituted.
    """
    address = address.strip()
    if address.startswith('['):
        host, _, rest = address[1:].partition(']')
        port_str = rest[1:] if rest.startswith(':') else ''
    elif address.count(':') == 1:
        host, _, port_str = address.partition(':')
    else:
        # Bare hostname/IPv4, or an unbracketed IPv6 literal
        return address, None

    try:
        port = int(port_str)
    except ValueError:
        return host, None
    if not 1 <= port <= 65535:
        return host, None
    return host, port


def bare_ip(address: Optional[str]) -> str:
    """Strip the port (and IPv6 brackets) from a reported address."""
    if not address:
        return ''
    if address.startswith('['):
        return address[1:].partition(']')[0]
    if address.count(':') > 1:
        return address
    return address.split(':')[0]


async def measure_latency(address: str, timeout: float = PROBE_TIMEOUT) -> Optional[int]:
    """
    Return the TCP connect time to address in milliseconds, or None if the
    node did not answer within timeout. Never raises.
    """
    host, port = split_host_port(address or '')
    if not host or port is None:
        log.debug(f"No usable port in address '{address}', skipping probe")
        return None

    start = time.monotonic()
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (asyncio.TimeoutError, OSError, ValueError) as e:
        log.debug(f"Probe to {address} failed: {type(e).__name__}")
        return None
    elapsed_ms = int((time.monotonic() - start) * 1000)

    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return elapsed_ms
