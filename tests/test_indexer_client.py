"""
Indexer HTTP client tests (httpx.MockTransport)
"""
import httpx
import pytest

from conftest import cheap_hash
from shielded_pool.crypto_core.field import to_hex32
from shielded_pool.crypto_core.tracer import SpentByWithdrawal, Unspent
from shielded_pool.indexer.client import IndexerClient, IndexerError

POOL = "0x" + "AB" * 20


def _deposit_row(i: int) -> dict:
    return {
        "precommitmentHash": hex(1000 + i),
        "value": str(10**18),
        "label": str(500 + i),
        "blockNumber": str(100 + i),
        "transactionHash": f"0x{i:064x}",
        "logIndex": i,
        "commitment": str(9000 + i),
    }


def _client(handler, page_size: int = 2) -> IndexerClient:
    return IndexerClient(
        base_url="http://indexer.test",
        chain_id=31337,
        transport=httpx.MockTransport(handler),
        page_size=page_size,
    )


class TestDeposits:
    """Deposit paging."""

    async def test_pages_until_short_page(self):
        """limit/offset advance; a short page ends iteration."""
        rows = [_deposit_row(i) for i in range(5)]
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/pools/{POOL.lower()}/deposits"
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            seen.append(offset)
            return httpx.Response(200, json=rows[offset:offset + limit])

        async with _client(handler) as client:
            pages = [(off, page) async for off, page in client.iter_deposit_pages(POOL)]

        assert seen == [0, 2, 4]
        assert [off for off, _ in pages] == [2, 4, 5]
        assert pages[2][1][0].label == 504

    async def test_wrapped_rows_and_resume(self):
        """{data: [...]} payloads; iteration resumes from an offset."""
        rows = [_deposit_row(i) for i in range(3)]

        def handler(request):
            offset = int(request.url.params["offset"])
            return httpx.Response(200, json={"data": rows[offset:offset + 2]})

        async with _client(handler) as client:
            events = []
            async for _, page in client.iter_deposit_pages(POOL, offset=1):
                events.extend(page)
            everything = await client.get_all_deposits(POOL)

        assert [e.label for e in events] == [501, 502]
        assert len(everything) == 3
        assert everything[0].precommitment_hash == 1000

    async def test_http_error(self):
        """Non-2xx becomes IndexerError."""
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(IndexerError, match="500"):
                await client.get_pool_deposits(POOL)

    async def test_malformed_row(self):
        """Missing fields become IndexerError."""
        async with _client(lambda r: httpx.Response(200, json=[{"value": "1"}])) as client:
            with pytest.raises(IndexerError):
                await client.get_pool_deposits(POOL)


class TestLeaves:
    """State tree leaves."""

    async def test_sorted_leaves(self):
        """Leaves returned out of order are sorted by index."""
        rows = [{"leafIndex": i, "leaf": str(10 * (i + 1)), "root": "0"} for i in (2, 0, 1)]

        def handler(request):
            offset = int(request.url.params["offset"])
            return httpx.Response(200, json=rows[offset:offset + 2])

        async with _client(handler) as client:
            assert await client.get_merkle_leaves(POOL) == [10, 20, 30]

    async def test_gap_detected(self):
        """A missing index is an error, not a silently wrong tree."""
        rows = [{"leafIndex": 0, "leaf": "1"}, {"leafIndex": 2, "leaf": "3"}]
        async with _client(lambda r: httpx.Response(200, json=rows), page_size=10) as client:
            with pytest.raises(IndexerError, match="gap"):
                await client.get_merkle_leaves(POOL)


class TestNullifiers:
    """Spend status lookups."""

    async def test_spend_info(self):
        """chainId is forwarded and the payload parsed."""
        nh = cheap_hash(1, 2)

        def handler(request):
            assert request.url.path == f"/nullifiers/{to_hex32(nh)}"
            assert request.url.params["chainId"] == "31337"
            return httpx.Response(200, json={
                "spent": True,
                "spentBy": "withdrawal",
                "withdrawal": {"value": "5", "feeAmount": "1", "recipient": "0x01", "newCommitment": "0"},
                "mergeDeposit": None,
            })

        async with _client(handler) as client:
            info = await client.get_spend_info(nh)
            assert await client.is_spent(nh)

        assert isinstance(info, SpentByWithdrawal)
        assert info.gross_value == 5
        assert not info.is_partial

    async def test_unspent(self):
        """spent=false parses to Unspent."""
        payload = {"spent": False, "spentBy": None, "withdrawal": None, "mergeDeposit": None}
        async with _client(lambda r: httpx.Response(200, json=payload)) as client:
            assert isinstance(await client.get_spend_info(7), Unspent)
            assert not await client.is_spent(7)


class TestReady:
    """Readiness probe."""

    async def test_ready(self):
        """200 means ready, anything else does not."""
        async with _client(lambda r: httpx.Response(200, text="ok")) as client:
            assert await client.ready()
        async with _client(lambda r: httpx.Response(503)) as client:
            assert not await client.ready()

    async def test_unreachable(self):
        """Transport errors read as not ready."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert not await client.ready()
            with pytest.raises(IndexerError):
                await client.sync_status()
