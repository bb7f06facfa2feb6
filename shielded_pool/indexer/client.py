# shielded_pool/indexer/client.py
"""
HTTP client for the chain indexer.

Endpoints used:
    GET /ready                              -> 200 once the indexer is caught up
    GET /sync-status                        -> {lastIndexedBlock, counts}
    GET /pools/{pool}/deposits?limit&offset -> deposit events, block/log order
    GET /pools/{pool}/leaves?limit&offset   -> state tree leaves, leaf order
    GET /nullifiers/{hash}?chainId          -> spend status of a nullifier hash
"""
from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger
from shielded_pool.crypto_core.field import to_field, to_hex32
from shielded_pool.crypto_core.merkle import IncrementalTree
from shielded_pool.crypto_core.recovery import DepositEvent
from shielded_pool.crypto_core.tracer import SpendInfo, spend_info_from_dict

logger = get_logger("indexer")

DEFAULT_PAGE_SIZE = 1000


class IndexerError(RuntimeError):
    """Indexer unreachable or returned an unexpected payload."""


class IndexerClient:
    def __init__(
        self,
        base_url: str = config.INDEXER_URL,
        chain_id: Optional[int] = config.CHAIN_ID,
        timeout: float = config.INDEXER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.page_size = page_size
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "IndexerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---------- Transport ----------

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise IndexerError(f"GET {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise IndexerError(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise IndexerError(f"GET {path} returned invalid JSON") from e

    @staticmethod
    def _rows(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data", [])
        if not isinstance(payload, list):
            raise IndexerError(f"expected a list of rows, got {type(payload).__name__}")
        return payload

    # ---------- Status ----------

    async def ready(self) -> bool:
        try:
            response = await self._client.get("/ready")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Indexer /ready check failed: {e}")
            return False

    async def sync_status(self) -> Dict[str, Any]:
        return await self._get("/sync-status")

    # ---------- Deposits ----------

    async def get_pool_deposits(self, pool: str, offset: int = 0, limit: Optional[int] = None) -> List[DepositEvent]:
        payload = await self._get(
            f"/pools/{pool.lower()}/deposits",
            params={"limit": limit or self.page_size, "offset": offset},
        )
        try:
            return [DepositEvent.from_dict(row) for row in self._rows(payload)]
        except (KeyError, ValueError) as e:
            raise IndexerError(f"malformed deposit row: {e}") from e

    async def iter_deposit_pages(self, pool: str, offset: int = 0) -> AsyncIterator[Tuple[int, List[DepositEvent]]]:
        """
        Yield (offset_after_page, deposits) until a short page is returned.
        """
        while True:
            page = await self.get_pool_deposits(pool, offset=offset, limit=self.page_size)
            if not page:
                return
            offset += len(page)
            yield offset, page
            if len(page) < self.page_size:
                return

    async def get_all_deposits(self, pool: str) -> List[DepositEvent]:
        events: List[DepositEvent] = []
        async for _, page in self.iter_deposit_pages(pool):
            events.extend(page)
        return events

    # ---------- State tree ----------

    async def get_merkle_leaves(self, pool: str) -> List[int]:
        """All state-tree leaves of a pool, ordered by leaf index."""
        leaves: List[Tuple[int, int]] = []
        offset = 0
        while True:
            payload = await self._get(
                f"/pools/{pool.lower()}/leaves",
                params={"limit": self.page_size, "offset": offset},
            )
            rows = self._rows(payload)
            for row in rows:
                try:
                    leaves.append((int(row["leafIndex"]), to_field(row["leaf"], "leaf")))
                except (KeyError, ValueError) as e:
                    raise IndexerError(f"malformed leaf row: {e}") from e
            offset += len(rows)
            if len(rows) < self.page_size:
                break

        leaves.sort(key=lambda x: x[0])
        for expected, (index, _) in enumerate(leaves):
            if index != expected:
                raise IndexerError(f"leaf index gap: expected {expected}, got {index}")
        return [leaf for _, leaf in leaves]

    # ---------- Nullifiers ----------

    async def get_spend_info(self, nullifier_hash: int) -> SpendInfo:
        params = {"chainId": self.chain_id} if self.chain_id is not None else None
        payload = await self._get(f"/nullifiers/{to_hex32(nullifier_hash)}", params=params)
        try:
            return spend_info_from_dict(payload)
        except (KeyError, TypeError) as e:
            raise IndexerError(f"malformed nullifier payload: {e}") from e

    async def is_spent(self, nullifier_hash: int) -> bool:
        params = {"chainId": self.chain_id} if self.chain_id is not None else None
        payload = await self._get(f"/nullifiers/{to_hex32(nullifier_hash)}", params=params)
        return bool(payload.get("spent"))


async def fetch_state_tree(indexer: IndexerClient, pool: str) -> IncrementalTree:
    """Rebuild a pool's state tree from the indexed leaves."""
    leaves = await indexer.get_merkle_leaves(pool)
    tree = IncrementalTree.from_leaves(leaves)
    logger.debug(f"Rebuilt state tree for {pool}: {tree.size} leaves, root={tree.root}")
    return tree
