import asyncio
import random
from datetime import timedelta

import pytest

from courier.core.config import ChannelConfig
from courier.core.errors import ConfigurationError, UnknownChannelError
from courier.platform.ports.transport import ConnectivityState
from courier.modules.queue.models import PENDING, PROCESSING, SENT
from courier.modules.delivery.coordinator import QueueCoordinator
from conftest import FakeTransport, make_settings


async def _eventually(check, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        result = check()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


def _coordinator(store, clock, transports, **overrides):
    return QueueCoordinator(
        store, transports, settings=make_settings(**overrides), clock=clock, rng=random.Random(3),
    )


async def _all_sent(store, n):
    return (await store.stats())["by_status"][SENT] == n


@pytest.mark.asyncio
async def test_start_delivers_and_stop_joins_workers(store, clock):
    a, b = FakeTransport(), FakeTransport()
    coordinator = _coordinator(store, clock, {"a": a, "b": b})
    for i in range(4):
        await store.enqueue(recipient=f"+91000000020{i}", content="hi")

    await coordinator.start()
    assert coordinator.running
    try:
        await _eventually(lambda: _all_sent(store, 4))
    finally:
        await coordinator.stop()

    assert not coordinator.running
    assert len(a.sent) + len(b.sent) == 4
    snapshot = coordinator.snapshot()
    assert not snapshot["a"]["running"]
    assert snapshot["a"]["daily_count"] + snapshot["b"]["daily_count"] == 4


@pytest.mark.asyncio
async def test_restart_after_stop(store, clock):
    coordinator = _coordinator(store, clock, {"a": FakeTransport(), "b": FakeTransport()})
    await coordinator.start()
    await coordinator.stop()

    await store.enqueue(recipient="+910000000210", content="again")
    await coordinator.start()
    try:
        await _eventually(lambda: _all_sent(store, 1))
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_missing_transport_is_a_configuration_error(store, clock):
    with pytest.raises(ConfigurationError):
        _coordinator(store, clock, {"a": FakeTransport()})


@pytest.mark.asyncio
async def test_bootstrap_retries_with_linear_capped_delay(store, clock):
    flaky = FakeTransport(connect_errors=[OSError("refused"), OSError("refused")])
    coordinator = _coordinator(store, clock, {"a": flaky, "b": FakeTransport()})

    assert await coordinator.bootstrap("a")
    channel = coordinator.channels["a"]
    assert channel.connectivity == ConnectivityState.CONNECTING
    assert channel.reconnect_attempts == 0
    assert clock.sleeps == [20, 40]
    assert flaky.connect_calls == ["a", "a", "a"]


@pytest.mark.asyncio
async def test_bootstrap_gives_up_and_flags_channel(store, clock):
    dead = FakeTransport(connect_errors=[OSError("refused")] * 5)
    coordinator = _coordinator(
        store, clock, {"a": dead, "b": FakeTransport()}, BOOTSTRAP_RETRY_STEP=40.0,
    )

    assert not await coordinator.bootstrap("a")
    channel = coordinator.channels["a"]
    assert channel.connectivity == ConnectivityState.MAX_RETRIES_REACHED
    assert channel.needs_intervention
    # 40 then min(80, 60)
    assert clock.sleeps == [40, 60]
    assert len(dead.connect_calls) == 3


@pytest.mark.asyncio
async def test_configuration_error_disables_only_that_channel(store, clock):
    broken = FakeTransport(connect_errors=[ConfigurationError("CHAT_GATEWAY_URL is not set")])
    healthy = FakeTransport()
    coordinator = _coordinator(store, clock, {"a": broken, "b": healthy})
    msg = await store.enqueue(recipient="+910000000220", content="hi")

    await coordinator.start()
    try:
        await _eventually(lambda: _all_sent(store, 1))
        await _eventually(lambda: not coordinator.describe("a")["running"])
    finally:
        await coordinator.stop()

    described = coordinator.describe("a")
    assert described["connectivity"] == ConnectivityState.DISABLED.value
    assert "CHAT_GATEWAY_URL" in described["last_error"]
    assert broken.sent == []
    assert (await store.get(msg.id)).channel_id == "b"


@pytest.mark.asyncio
async def test_disabled_channel_releases_messages_pinned_to_it(store, clock):
    broken = FakeTransport(connect_errors=[ConfigurationError("CHAT_GATEWAY_URL is not set")])
    healthy = FakeTransport()
    coordinator = _coordinator(store, clock, {"a": broken, "b": healthy})
    msg = await store.enqueue(recipient="+910000000221", content="hi", channel_hint="a")

    await coordinator.start()
    try:
        await _eventually(lambda: _all_sent(store, 1))
    finally:
        await coordinator.stop()

    assert coordinator.channels["a"].connectivity == ConnectivityState.DISABLED
    assert broken.sent == []
    assert healthy.sent == [("b", "+910000000221")]
    assert (await store.get(msg.id)).channel_id == "b"


@pytest.mark.asyncio
async def test_reset_channel_restarts_a_disabled_channel(store, clock):
    transport = FakeTransport(connect_errors=[ConfigurationError("missing token")])
    coordinator = _coordinator(store, clock, {"a": transport, "b": FakeTransport()})

    await coordinator.start()
    try:
        await _eventually(lambda: coordinator.channels["a"].connectivity == ConnectivityState.DISABLED)
        await _eventually(lambda: not coordinator.describe("a")["running"])

        described = coordinator.reset_channel("a")
        assert described["connectivity"] == ConnectivityState.DISCONNECTED.value
        assert described["last_error"] is None

        await _eventually(lambda: coordinator.channels["a"].connectivity == ConnectivityState.CONNECTED)
        assert coordinator.describe("a")["running"]
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_reset_unknown_channel(store, clock):
    coordinator = _coordinator(store, clock, {"a": FakeTransport(), "b": FakeTransport()})
    with pytest.raises(UnknownChannelError):
        coordinator.reset_channel("nope")


@pytest.mark.asyncio
async def test_start_reclaims_stale_processing_rows(store, clock):
    msg = await store.enqueue(recipient="+910000000230", content="hi", scheduled_at=clock.now() - timedelta(hours=2))
    # a worker that crashed an hour ago still holds this row
    await store.claim_next("ghost", clock.now() - timedelta(hours=1))
    assert (await store.get(msg.id)).status == PROCESSING

    coordinator = _coordinator(store, clock, {"a": FakeTransport(), "b": FakeTransport()})
    await coordinator.start()
    try:
        await _eventually(lambda: _all_sent(store, 1))
    finally:
        await coordinator.stop()
    assert (await store.get(msg.id)).channel_id in {"a", "b"}


@pytest.mark.asyncio
async def test_health_report_levels(store, clock):
    coordinator = _coordinator(
        store, clock, {"a": FakeTransport(), "b": FakeTransport(), "mail": FakeTransport()},
        CHANNELS=[
            ChannelConfig(id="a", kind="chat"),
            ChannelConfig(id="b", kind="chat"),
            ChannelConfig(id="mail", kind="email"),
        ],
    )
    quiet = {"by_status": {PENDING: 0, PROCESSING: 0, SENT: 0, "failed": 0}}
    busy = {"by_status": {PENDING: 0, PROCESSING: 11, SENT: 0, "failed": 0}}

    assert coordinator.health_report(quiet)["overall"] == "critical"

    coordinator.channels["a"].connectivity = ConnectivityState.CONNECTED
    assert coordinator.health_report(quiet)["overall"] == "degraded"

    coordinator.channels["b"].connectivity = ConnectivityState.DEGRADED
    coordinator.channels["mail"].connectivity = ConnectivityState.CONNECTED
    assert coordinator.health_report(quiet)["overall"] == "healthy"
    report = coordinator.health_report(busy)
    assert report["overall"] == "warning"
    assert report["channels"]["mail"]["daily_quota"] == 500
    assert report["queue"][PROCESSING] == 11
