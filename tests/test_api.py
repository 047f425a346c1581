import uuid

import httpx
import pytest
import pytest_asyncio

from courier.core.config import ChannelConfig
from courier.main import create_app
from courier.platform.ports.transport import ConnectivityState
from courier.modules.delivery.coordinator import QueueCoordinator
from conftest import FakeTransport, make_settings, T0

PREFIX = "/api/v1"


@pytest_asyncio.fixture
async def app(store, clock):
    app = create_app(manage_workers=False)
    app.state.store = store
    app.state.coordinator = QueueCoordinator(
        store, {"a": FakeTransport(), "b": FakeTransport()}, settings=make_settings(), clock=clock,
    )
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _fail(store, message_id):
    await store.claim_next("a", T0)
    await store.record_failure(message_id, "a", error="rejected", next_attempts=5,
                               next_scheduled_at=T0, terminal=True, now=T0)


@pytest.mark.asyncio
async def test_enqueue_and_fetch(client):
    r = await client.post(f"{PREFIX}/messages", json={"recipient": "+910000000300", "content": "hello"})
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending"
    assert body["attempts"] == 0
    assert body["kind"] == "chat"

    r = await client.get(f"{PREFIX}/messages/{body['id']}")
    assert r.status_code == 200
    assert r.json()["recipient"] == "+910000000300"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"recipient": "ops@example.com", "content": "body", "kind": "email"},
    {"recipient": "+910000000301", "content": "hi", "kind": "fax"},
    {"recipient": "+910000000302", "content": "hi", "channel_hint": "nope"},
    {"recipient": "", "content": "hi"},
])
async def test_enqueue_rejects_invalid_payloads(client, payload):
    r = await client.post(f"{PREFIX}/messages", json=payload)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_enqueue_rejects_hint_to_channel_of_another_kind(client, app, store, clock):
    app.state.coordinator = QueueCoordinator(
        store, {"a": FakeTransport(), "mail": FakeTransport()}, clock=clock,
        settings=make_settings(CHANNELS=[ChannelConfig(id="a", kind="chat"), ChannelConfig(id="mail", kind="email")]),
    )
    r = await client.post(f"{PREFIX}/messages", json={"recipient": "+910000000304", "content": "hi", "channel_hint": "mail"})
    assert r.status_code == 422
    assert (await store.stats())["total"] == 0

    r = await client.post(f"{PREFIX}/messages", json={
        "recipient": "ops@example.com", "content": "body", "kind": "email", "subject": "Receipt", "channel_hint": "mail",
    })
    assert r.status_code == 201
    assert r.json()["channel_id"] == "mail"


@pytest.mark.asyncio
async def test_unknown_message_is_404(client):
    r = await client.get(f"{PREFIX}/messages/{uuid.uuid4()}")
    assert r.status_code == 404
    r = await client.delete(f"{PREFIX}/messages/{uuid.uuid4()}")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_failed_listing_and_retry(client, store):
    msg = await store.enqueue(recipient="+910000000303", content="hi")
    await _fail(store, msg.id)

    r = await client.get(f"{PREFIX}/messages/failed")
    assert r.status_code == 200
    page = r.json()
    assert page["total"] == 1
    assert page["items"][0]["error"] == "rejected"

    r = await client.post(f"{PREFIX}/messages/{msg.id}/retry")
    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    assert r.json()["attempts"] == 0

    r = await client.post(f"{PREFIX}/messages/{msg.id}/retry")
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_retry_all_failed(client, store):
    for i in range(2):
        msg = await store.enqueue(recipient=f"+91000000031{i}", content="hi")
        await _fail(store, msg.id)
    r = await client.post(f"{PREFIX}/messages/retry-failed")
    assert r.json() == {"count": 2}


@pytest.mark.asyncio
async def test_delete_message(client, store):
    msg = await store.enqueue(recipient="+910000000320", content="hi")
    r = await client.delete(f"{PREFIX}/messages/{msg.id}")
    assert r.status_code == 204
    assert (await client.get(f"{PREFIX}/messages/{msg.id}")).status_code == 404


@pytest.mark.asyncio
async def test_delivery_health_and_channels(client, app):
    r = await client.get(f"{PREFIX}/delivery/health")
    assert r.status_code == 200
    assert r.json()["overall"] == "critical"

    r = await client.get(f"{PREFIX}/delivery/channels")
    assert set(r.json()) == {"a", "b"}
    assert r.json()["a"]["connectivity"] == "disconnected"

    app.state.coordinator.channels["a"].connectivity = ConnectivityState.MAX_RETRIES_REACHED
    r = await client.post(f"{PREFIX}/delivery/channels/a/reset")
    assert r.status_code == 200
    assert r.json()["connectivity"] == "disconnected"

    r = await client.post(f"{PREFIX}/delivery/channels/zzz/reset")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_delivery_stats_and_sweeps(client, store):
    await store.enqueue(recipient="+910000000330", content="hi")
    r = await client.get(f"{PREFIX}/delivery/stats")
    assert r.json()["by_status"]["pending"] == 1
    assert r.json()["total"] == 1

    assert (await client.post(f"{PREFIX}/delivery/reclaim-stale")).json() == {"count": 0}
    assert (await client.post(f"{PREFIX}/delivery/purge-failed")).json() == {"count": 0}


@pytest.mark.asyncio
async def test_delivery_routes_need_a_coordinator(client, app):
    app.state.coordinator = None
    r = await client.get(f"{PREFIX}/delivery/health")
    assert r.status_code == 503
    assert (await client.get(f"{PREFIX}/health")).json() == {"status": "ok"}
