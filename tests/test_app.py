import pytest
from fastapi.testclient import TestClient

from fakes import ADDR_A, OTHER, FakeChain, tx
from txwatch.app import create_app
from txwatch.models import Transaction
from txwatch.store import InMemorySubscriberStore

TEST_CFG = {
    "node": {"url": "http://unused", "probe_retries": 0},
    "sync": {"enabled": False},
    "store": {"backend": "memory"},
}


@pytest.fixture
def fake_chain():
    return FakeChain(head=1000)


@pytest.fixture
def mem_store():
    return InMemorySubscriberStore()


@pytest.fixture
def api(fake_chain, mem_store):
    app = create_app(TEST_CFG, client=fake_chain, store=mem_store)
    with TestClient(app) as client:
        yield client


def test_block(api):
    r = api.get("/block")
    assert r.status_code == 200
    assert r.json() == {"block_number": 1000}


def test_subscribe_then_catch_up(api, fake_chain):
    r = api.post(f"/subscriptions/{ADDR_A}")
    assert r.status_code == 201
    assert r.json() == {"address": ADDR_A, "last_processed_height": 1000, "transaction_count": 0}

    fake_chain.head = 1002
    fake_chain.add(1001, tx("0x01", 1001, OTHER, ADDR_A, "0x2a"))

    r = api.get(f"/transactions/{ADDR_A}")
    assert r.status_code == 200
    body = r.json()
    assert body["last_processed_height"] == 1003
    assert body["transactions"] == [
        {"hash": "0x01", "block_height": 1001, "sender": OTHER, "recipient": ADDR_A, "value": "0x2a"}
    ]

    # Nothing new on the second call, history keeps the first find
    assert api.get(f"/transactions/{ADDR_A}").json()["transactions"] == []
    history = api.get(f"/transactions/{ADDR_A}/history").json()
    assert [t["hash"] for t in history["transactions"]] == ["0x01"]


def test_list_and_unsubscribe(api):
    api.post(f"/subscriptions/{ADDR_A}")
    assert [s["address"] for s in api.get("/subscriptions").json()] == [ADDR_A]

    assert api.delete(f"/subscriptions/{ADDR_A}").status_code == 204
    assert api.get("/subscriptions").json() == []
    assert api.get(f"/transactions/{ADDR_A}").status_code == 404


def test_error_mapping(api, fake_chain):
    r = api.post("/subscriptions/0x123")
    assert r.status_code == 422
    assert r.json()["error"] == "InvalidAddress"

    r = api.get(f"/transactions/{ADDR_A}")
    assert r.status_code == 404
    assert r.json()["error"] == "NotSubscribed"

    fake_chain.height_down = True
    r = api.get("/block")
    assert r.status_code == 503
    assert r.json()["error"] == "ChainUnavailable"


def test_invariant_violation_is_conflict(api, fake_chain):
    api.post(f"/subscriptions/{ADDR_A}")
    fake_chain.head = 990
    assert api.get(f"/transactions/{ADDR_A}").status_code == 409


def test_sync_and_health(api, fake_chain):
    api.post(f"/subscriptions/{ADDR_A}")
    fake_chain.head = 1004

    report = api.post("/sync").json()
    assert report["error"] is None
    assert report["advanced"] == {ADDR_A: 1005}

    health = api.get("/health").json()
    assert health["status"] == "ok"
    assert health["sync"]["ticks"] == 1

    fake_chain.height_down = True
    api.post("/sync")
    assert api.get("/health").json()["status"] == "degraded"


def test_catch_up_response_survives_unsubscribe_mid_scan(api, fake_chain, mem_store):
    api.post(f"/subscriptions/{ADDR_A}")
    fake_chain.head = 1002
    fake_chain.add(1000, tx("0x01", 1000, ADDR_A, OTHER))

    async def unsubscribe_after_first_block(height):
        if height == 1000:
            await mem_store.delete(ADDR_A)

    fake_chain.on_fetch = unsubscribe_after_first_block
    r = api.get(f"/transactions/{ADDR_A}")

    assert r.status_code == 200
    body = r.json()
    assert [t["hash"] for t in body["transactions"]] == ["0x01"]
    assert body["last_processed_height"] == 1003


def test_null_value_is_served_as_zero(api, fake_chain):
    api.post(f"/subscriptions/{ADDR_A}")
    fake_chain.add(1000, Transaction.from_rpc({"hash": "0x01", "from": ADDR_A, "to": OTHER, "value": None}, 1000))

    r = api.get(f"/transactions/{ADDR_A}")

    assert r.status_code == 200
    assert r.json()["transactions"][0]["value"] == "0x0"
