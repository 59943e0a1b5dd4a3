"""
Tests for the refresh orchestrator: one cycle against a real store with
fake directory, probe and geo dependencies.
"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from pnode_monitor.models import GeoData, parse_pod_list
from pnode_monitor.prpc_client import FetchFailure
from pnode_monitor.refresher import (STATE_IDLE, FleetRefresher, build_node_record,
                                     summarize_fleet)


class FakeProbe:
    def __init__(self, latency=25):
        self.latency = latency
        self.calls = []

    async def __call__(self, address):
        self.calls.append(address)
        return self.latency


@pytest.fixture
def pods(sample_pods):
    return parse_pod_list(sample_pods)


@pytest.fixture
def prpc(pods):
    client = MagicMock()
    client.fetch_pods = AsyncMock(return_value=pods)
    return client


@pytest.fixture
def geo():
    cache = MagicMock()
    cache.resolve = AsyncMock(return_value=GeoData(lat=49.4478, lon=11.0683, country="Germany", city="Nuremberg"))
    return cache


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def refresher(prpc, store, geo, probe):
    return FleetRefresher(prpc, store, geo, probe=probe, interval=3600)


def test_summarize_fleet(pods):
    assert summarize_fleet(pods) == (2, 1, 125000000)


def test_summarize_empty_fleet():
    assert summarize_fleet([]) == (0, 0, 0)


def test_build_node_record_without_enrichment(pods):
    record = build_node_record(pods[1], None, None)

    assert record.pubkey == "PubKeyBeta222"
    assert record.status == "offline"
    assert record.latency_ms is None
    assert record.country is None
    assert record.lat is None
    assert record.credits is None


@pytest.mark.asyncio
async def test_cycle_writes_nodes_snapshot_and_history(refresher, store):
    result = await refresher.run_cycle()

    assert result.total_nodes == 2
    assert result.online_nodes == 1
    assert result.written == 2

    nodes = {n.pubkey: n for n in await store.get_all_nodes()}
    assert set(nodes) == {"PubKeyAlpha111", "PubKeyBeta222"}
    alpha = nodes["PubKeyAlpha111"]
    assert alpha.status == "online"
    assert alpha.latency_ms == 25
    assert alpha.country == "Germany"
    assert alpha.ip == "10.0.0.5:9001"
    assert nodes["PubKeyBeta222"].status == "offline"

    snapshots = await store.get_fleet_history()
    assert len(snapshots) == 1
    assert snapshots[0]["total_nodes"] == 2
    assert snapshots[0]["online_nodes"] == 1
    assert snapshots[0]["total_storage"] == 125000000

    for pubkey in ("PubKeyAlpha111", "PubKeyBeta222"):
        assert len(await store.get_node_history(pubkey)) == 1
    assert refresher.cycles_completed == 1
    assert refresher.last_result is result


@pytest.mark.asyncio
async def test_fetch_failure_skips_cycle(refresher, prpc, store):
    await refresher.run_cycle()
    before = await store.get_all_nodes()

    prpc.fetch_pods.side_effect = FetchFailure("All 9 seed nodes failed")
    assert await refresher.run_cycle() is None

    assert await store.get_all_nodes() == before
    assert len(await store.get_fleet_history()) == 1
    assert refresher.cycles_completed == 1


@pytest.mark.asyncio
async def test_repeated_cycles_replace_nodes_and_grow_history(refresher, store):
    await refresher.run_cycle()
    first = sorted(await store.get_all_nodes(), key=lambda n: n.pubkey)
    await refresher.run_cycle()
    second = sorted(await store.get_all_nodes(), key=lambda n: n.pubkey)

    assert len(second) == 2
    assert second == first
    assert len(await store.get_fleet_history()) == 2
    for pubkey in ("PubKeyAlpha111", "PubKeyBeta222"):
        assert len(await store.get_node_history(pubkey)) == 2


@pytest.mark.asyncio
async def test_probe_gets_full_address_and_geo_gets_bare_ip(refresher, probe, geo):
    await refresher.run_cycle()

    assert sorted(probe.calls) == ["10.0.0.5:9001", "203.0.113.7:9001"]
    resolved = sorted(call.args[0] for call in geo.resolve.call_args_list)
    assert resolved == ["10.0.0.5", "203.0.113.7"]


@pytest.mark.asyncio
async def test_loopback_and_missing_address_are_not_geolocated(prpc, store, geo, probe):
    prpc.fetch_pods.return_value = parse_pod_list([
        {"pubkey": "Local", "address": "127.0.0.1:9001", "uptime": 10},
        {"pubkey": "NoAddress", "uptime": 10},
    ])
    refresher = FleetRefresher(prpc, store, geo, probe=probe)

    result = await refresher.run_cycle()

    assert result.written == 2
    assert probe.calls == ["127.0.0.1:9001"]
    geo.resolve.assert_not_called()
    node = await store.find_node("NoAddress")
    assert node.ip == ""
    assert node.latency_ms is None


@pytest.mark.asyncio
async def test_unreachable_node_is_stored_without_latency(refresher, probe, store):
    probe.latency = None

    await refresher.run_cycle()

    node = await store.find_node("PubKeyAlpha111")
    assert node.latency_ms is None
    history = await store.get_node_history("PubKeyAlpha111")
    assert history[0]["latency_ms"] is None
    assert history[0]["status"] == "online"


@pytest.mark.asyncio
async def test_geo_error_keeps_measured_latency(refresher, geo, store):
    geo.resolve.side_effect = RuntimeError("resolver exploded")

    result = await refresher.run_cycle()

    assert result.written == 2
    node = await store.find_node("PubKeyAlpha111")
    assert node.latency_ms == 25
    assert node.geo is None
    history = await store.get_node_history("PubKeyAlpha111")
    assert history[0]["latency_ms"] == 25


@pytest.mark.asyncio
async def test_probe_error_does_not_drop_node(prpc, store, geo):
    async def broken_probe(address):
        raise RuntimeError("probe exploded")

    refresher = FleetRefresher(prpc, store, geo, probe=broken_probe)

    result = await refresher.run_cycle()

    assert result.written == 2
    node = await store.find_node("PubKeyAlpha111")
    assert node.latency_ms is None
    assert node.geo is None


@pytest.mark.asyncio
async def test_node_write_failure_does_not_stop_other_nodes(refresher, store):
    real_upsert = store.upsert_node

    async def flaky_upsert(record):
        if record.pubkey == "PubKeyAlpha111":
            raise sqlite3.OperationalError("disk I/O error")
        return await real_upsert(record)

    store.upsert_node = flaky_upsert

    result = await refresher.run_cycle()

    assert result.written == 1
    assert result.failed == 1
    assert [n.pubkey for n in await store.get_all_nodes()] == ["PubKeyBeta222"]
    # The history sample is still recorded for the node whose upsert failed
    assert len(await store.get_node_history("PubKeyAlpha111")) == 1


@pytest.mark.asyncio
async def test_snapshot_failure_still_writes_nodes(refresher, store):
    store.write_fleet_snapshot = AsyncMock(side_effect=sqlite3.OperationalError("disk full"))

    result = await refresher.run_cycle()

    assert result.written == 2
    assert len(await store.get_all_nodes()) == 2


@pytest.mark.asyncio
async def test_pod_without_pubkey_is_skipped(prpc, store, geo, probe, sample_pods):
    prpc.fetch_pods.return_value = parse_pod_list(sample_pods + [{"address": "198.51.100.1:9001", "uptime": 5}])
    refresher = FleetRefresher(prpc, store, geo, probe=probe)

    result = await refresher.run_cycle()

    assert result.total_nodes == 3
    assert result.skipped == 1
    assert result.written == 2
    assert len(await store.get_all_nodes()) == 2
    assert (await store.get_fleet_history())[0]["total_nodes"] == 3
    # Nothing is recorded under an empty key
    assert await store.get_node_history("") == []
    assert await store.find_node("198.51.100.1") is None


@pytest.mark.asyncio
async def test_stop_after_fetch_abandons_cycle(refresher, prpc, store, pods):
    stop_event = asyncio.Event()

    async def fetch_then_stop():
        stop_event.set()
        return pods

    prpc.fetch_pods.side_effect = fetch_then_stop

    assert await refresher.run_cycle(stop_event) is None
    assert await store.get_all_nodes() == []
    assert await store.get_fleet_history() == []


@pytest.mark.asyncio
async def test_run_forever_runs_first_cycle_immediately_and_stops(refresher):
    stop_event = asyncio.Event()
    task = asyncio.create_task(refresher.run_forever(stop_event))

    for _ in range(200):
        if refresher.cycles_completed:
            break
        await asyncio.sleep(0.01)
    assert refresher.cycles_completed == 1

    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert refresher.state == STATE_IDLE


@pytest.mark.asyncio
async def test_run_forever_does_nothing_when_already_stopped(refresher, prpc):
    stop_event = asyncio.Event()
    stop_event.set()

    await asyncio.wait_for(refresher.run_forever(stop_event), timeout=1.0)

    prpc.fetch_pods.assert_not_called()


@pytest.mark.asyncio
async def test_run_forever_survives_unexpected_errors(refresher, prpc):
    stop_event = asyncio.Event()

    async def explode():
        stop_event.set()
        raise RuntimeError("unexpected")

    prpc.fetch_pods.side_effect = explode

    await asyncio.wait_for(refresher.run_forever(stop_event), timeout=1.0)

    assert prpc.fetch_pods.call_count == 1
    assert refresher.state == STATE_IDLE
