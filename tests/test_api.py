"""
HTTP API tests (FastAPI TestClient)
"""
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from conftest import FakeChain, FakeDepositSource
from shielded_pool.api.app import PoolServices, create_app
from shielded_pool.api.preflight import PreflightService
from shielded_pool.asp.service import AssociationSetService
from shielded_pool.asp.store import AspStore
from shielded_pool.crypto_core.merkle import MAX_TREE_DEPTH
from shielded_pool.crypto_core.recovery import DepositEvent
from shielded_pool.indexer.client import IndexerClient

POOL = "0x" + "12" * 20

PROOF = {
    "pi_a": ["1", "2", "1"],
    "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
    "pi_c": ["7", "8", "1"],
    "protocol": "groth16",
    "curve": "bn128",
}


def _indexer_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/ready":
        return httpx.Response(200, text="ok")
    if request.url.path.endswith("/leaves"):
        return httpx.Response(200, json=[])
    return httpx.Response(404)


@pytest.fixture
def services(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    indexer = IndexerClient(base_url="http://indexer.test", transport=httpx.MockTransport(_indexer_handler))
    source = FakeDepositSource([
        DepositEvent(precommitment_hash=1, value=1, label=31, block_number=7),
        DepositEvent(precommitment_hash=2, value=1, label=32, block_number=8),
    ])
    chain = FakeChain()
    asp = AssociationSetService(scope=9, pool_address=POOL, store=AspStore(engine=engine), deposits=source, chain=chain)
    return PoolServices(
        indexer=indexer,
        chain=None,
        asp=asp,
        preflight=PreflightService(indexer, asp),
        database_enabled=False,
        rpc_url=None,
        indexer_url=None,
    )


@pytest.fixture
def client(services):
    app = create_app(services=services, run_scheduler=False)
    with TestClient(app) as c:
        yield c


class TestHealth:
    """Health endpoints."""

    def test_live(self, client):
        """Liveness with uptime."""
        r = client.get("/health/live")
        assert r.status_code == 200
        assert r.json()["status"] == "alive"

    def test_health_includes_asp(self, client):
        """Comprehensive report carries the synchronizer state."""
        body = client.get("/health").json()
        assert body["status"] in ("healthy", "degraded")
        assert body["checks"]["asp"]["state"] == "idle"
        assert body["checks"]["database"]["status"] == "disabled"

    def test_ready(self, client):
        """Nothing critical configured: ready."""
        assert client.get("/health/ready").json() == {"status": "ready"}


class TestAsp:
    """Association set endpoints."""

    def test_sync_publish_and_status(self, client, services):
        """Sync adds labels, publishes, status converges."""
        r = client.post("/asp/sync", json={"publish": True})
        assert r.status_code == 200
        body = r.json()
        assert body["new_labels"] == ["31", "32"]
        assert body["published"]
        assert body["tx_hash"]

        status = client.get("/asp/status").json()
        assert status["synced"]
        assert status["size"] == 2
        assert status["cursor_offset"] == 2
        assert status["last_block"] == 8
        assert status["local_root"] == str(services.asp.root)

    def test_sync_without_publish(self, client, services):
        """publish=false leaves the chain untouched."""
        body = client.post("/asp/sync", json={"publish": False}).json()
        assert not body["published"]
        assert services.asp.chain.published == []

    def test_proof(self, client):
        """Padded membership proof; unknown label is 404."""
        client.post("/asp/sync", json={"publish": False})
        r = client.get("/asp/proof/32")
        assert r.status_code == 200
        body = r.json()
        assert body["leaf"] == "32"
        assert len(body["siblings"]) == MAX_TREE_DEPTH
        assert client.get("/asp/proof/99").status_code == 404

    def test_bad_label(self, client):
        """Non-field label is a 400."""
        assert client.get("/asp/proof/notanumber").status_code == 400

    def test_rebuild(self, client):
        """rebuild=true reports every approved label."""
        client.post("/asp/sync", json={"publish": False})
        body = client.post("/asp/sync", json={"publish": False, "rebuild": True}).json()
        assert body["new_labels"] == ["31", "32"]
        assert body["size"] == 2


class TestNotConfigured:
    """Routes without an association set."""

    def test_asp_routes_503(self, services):
        """ASP endpoints report missing configuration."""
        services.asp = None
        services.preflight = PreflightService(services.indexer, None)
        with TestClient(create_app(services=services, run_scheduler=False)) as c:
            assert c.get("/asp/status").status_code == 503
            body = c.post("/preflight/private-send", json={"pool_address": POOL, "deposit_label": "31"}).json()
            assert not body["can_proceed"]
            assert "ASP service unavailable" in body["errors"]


class TestPreflight:
    """Preflight endpoint."""

    def test_no_leaves_blocks(self, client):
        """Empty state tree blocks the send with a retry hint."""
        r = client.post("/preflight/private-send", json={"pool_address": POOL, "deposit_label": "31"})
        assert r.status_code == 200
        body = r.json()
        assert not body["can_proceed"]
        assert body["checks"]["label_exists"]
        assert "No merkle leaves found in indexer" in body["errors"]
        assert body["retry_after_ms"] == 15000


class TestProofFormat:
    """Proof formatting endpoint."""

    def test_format(self, client):
        """pB swapped and calldata encoded."""
        r = client.post("/proof/format", json={"proof": PROOF, "public_signals": [str(i) for i in range(8)]})
        assert r.status_code == 200
        body = r.json()
        assert body["pB"] == [["4", "3"], ["6", "5"]]
        assert body["public_signals"] == [str(i) for i in range(8)]
        assert len(body["encoded"]) == 2 + 8 * 64

    def test_invalid(self, client):
        """Non-numeric coordinates are a 400; short signals a 422."""
        bad = dict(PROOF, pi_a=["x", "y"])
        r = client.post("/proof/format", json={"proof": bad, "public_signals": [str(i) for i in range(8)]})
        assert r.status_code == 400
        r = client.post("/proof/format", json={"proof": PROOF, "public_signals": ["1"]})
        assert r.status_code == 422
