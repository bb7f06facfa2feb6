# shielded_pool/asp/service.py
"""
Association-set synchronizer.

Keeps one tree of approved deposit labels per pool scope, persisted through
AspStore, and publishes its root on-chain through the postman role.

Lifecycle:

    UNINITIALIZED --initialize()--> RESTORING --> IDLE <--> SYNCING

Mutations (sync, rebuild, publish) are serialized by a per-service lock and
single-flighted: concurrent callers of the same operation share one run.
Each page of new labels is applied to a copy of the tree, persisted together
with the cursor in one transaction, and only then swapped in, so readers
(status, has_label, generate_proof) always see a committed snapshot.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Hashable, List, Optional, Protocol, Tuple, Union

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger
from shielded_pool.asp.store import AspStore, LabelRow
from shielded_pool.crypto_core.field import to_field
from shielded_pool.crypto_core.merkle import Hash2, IncrementalTree, MerkleProof
from shielded_pool.crypto_core.recovery import DepositEvent

logger = get_logger("asp.service")


class AspError(RuntimeError):
    pass


class AspNotConfiguredError(AspError):
    pass


class AspNotInitializedError(AspError):
    pass


class AspState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESTORING = "restoring"
    IDLE = "idle"
    SYNCING = "syncing"


# ---------- Collaborators ----------

class DepositSource(Protocol):
    def iter_deposit_pages(self, pool: str, offset: int = 0) -> AsyncIterator[Tuple[int, List[DepositEvent]]]:
        ...


class RootPublisher(Protocol):
    can_publish: bool

    async def latest_root(self) -> int:
        ...

    async def update_root(self, root: int, ipfs_cid: str) -> str:
        ...


ApprovalPolicy = Callable[[DepositEvent], Union[bool, Awaitable[bool]]]


def approve_all(event: DepositEvent) -> bool:
    return True


# ---------- Results ----------

@dataclass
class SyncResult:
    new_labels: List[int] = field(default_factory=list)
    root: int = 0
    size: int = 0
    cursor_offset: int = 0
    last_block: int = 0


@dataclass
class PublishResult:
    updated: bool
    root: int
    tx_hash: Optional[str] = None


@dataclass
class AspStatus:
    synced: bool
    local_root: int
    on_chain_root: Optional[int]
    size: int
    depth: int
    state: AspState
    cursor_offset: int
    last_block: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "localRoot": str(self.local_root),
            "onChainRoot": str(self.on_chain_root) if self.on_chain_root is not None else None,
            "size": self.size,
            "depth": self.depth,
            "state": self.state.value,
            "cursorOffset": self.cursor_offset,
            "lastBlock": self.last_block,
            "error": self.error,
        }


# ---------- Single flight ----------

class SingleFlight:
    """Concurrent calls with the same key await one shared task."""

    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._tasks

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task

            def _forget(t: asyncio.Task, key=key) -> None:
                if self._tasks.get(key) is t:
                    del self._tasks[key]

            task.add_done_callback(_forget)
        # a cancelled waiter must not cancel the run other callers share
        return await asyncio.shield(task)


# ---------- Service ----------

class AssociationSetService:
    def __init__(
        self,
        scope: int,
        pool_address: str,
        store: AspStore,
        deposits: DepositSource,
        chain: Optional[RootPublisher] = None,
        approve: ApprovalPolicy = approve_all,
        content_cid: str = config.ASP_CONTENT_CID,
        hasher: Optional[Hash2] = None,
    ):
        self.scope = to_field(scope, "scope")
        self.pool_address = pool_address
        self.store = store
        self.deposits = deposits
        self.chain = chain
        self.approve = approve
        self.content_cid = content_cid

        self._hasher = hasher
        self._tree = IncrementalTree(hasher=hasher)
        self._cursor = 0
        self._last_block = 0
        self._state = AspState.UNINITIALIZED
        self._init_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._flight = SingleFlight()

    # ---------- Snapshot readers ----------

    @property
    def state(self) -> AspState:
        return self._state

    @property
    def root(self) -> int:
        return self._tree.root

    @property
    def size(self) -> int:
        return self._tree.size

    @property
    def depth(self) -> int:
        return self._tree.depth

    @property
    def cursor(self) -> Tuple[int, int]:
        return self._cursor, self._last_block

    @property
    def tree(self) -> IncrementalTree:
        return self._tree

    def _require_ready(self) -> None:
        if self._state in (AspState.UNINITIALIZED, AspState.RESTORING):
            raise AspNotInitializedError("association set not initialized")

    def has_label(self, label: int) -> bool:
        self._require_ready()
        return self._tree.has(label)

    def generate_proof(self, label: int) -> MerkleProof:
        """
        Membership proof for a label.

        Raises:
            LeafNotFoundError: label not approved (yet)
        """
        self._require_ready()
        return self._tree.proof_for_leaf(label)

    # ---------- Lifecycle ----------

    async def initialize(self) -> None:
        """Restore the persisted tree. Safe to call repeatedly and concurrently."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._restore())
        try:
            await asyncio.shield(self._init_task)
        except Exception:
            # allow a later initialize() to retry
            self._init_task = None
            raise

    async def _restore(self) -> None:
        self._state = AspState.RESTORING
        try:
            await self.store.init()
            snapshot = await self.store.load(self.scope)
            if snapshot is not None:
                tree = IncrementalTree.from_leaves(snapshot.labels, hasher=self._hasher)
                if snapshot.labels and tree.root != snapshot.root:
                    logger.warning(
                        f"Persisted ASP root for scope {self.scope} differs from the rebuilt root; "
                        f"using the rebuilt root {tree.root}"
                    )
                self._tree = tree
                self._cursor = snapshot.cursor_offset
                self._last_block = snapshot.last_block
        except Exception:
            self._state = AspState.UNINITIALIZED
            logger.error(f"Failed to restore association set for scope {self.scope}", exc_info=True)
            raise

        self._state = AspState.IDLE
        logger.info(
            f"Association set restored for scope {self.scope}: {self._tree.size} label(s), "
            f"cursor={self._cursor}, root={self._tree.root}"
        )

    async def close(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        await self.store.close()
        self._init_task = None
        self._state = AspState.UNINITIALIZED

    async def _ensure_ready(self) -> None:
        if self._state in (AspState.UNINITIALIZED, AspState.RESTORING):
            await self.initialize()

    # ---------- Sync ----------

    async def _is_approved(self, event: DepositEvent) -> bool:
        verdict = self.approve(event)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return bool(verdict)

    async def process_new_deposits(self) -> SyncResult:
        """Pull deposits past the cursor and append newly approved labels."""
        await self._ensure_ready()
        return await self._flight.run((self.scope, "sync"), self._sync)

    async def _sync(self) -> SyncResult:
        async with self._lock:
            self._state = AspState.SYNCING
            result = SyncResult()
            try:
                async for offset_after, page in self.deposits.iter_deposit_pages(self.pool_address, self._cursor):
                    working = self._tree.copy()
                    rows: List[LabelRow] = []
                    last_block = self._last_block
                    for event in page:
                        last_block = max(last_block, event.block_number)
                        if working.has(event.label):
                            continue
                        if not await self._is_approved(event):
                            logger.info(f"Label {event.label} not approved; skipped")
                            continue
                        index, _ = working.insert(event.label)
                        rows.append((index, event.label, event.block_number))

                    await self.store.persist_batch(
                        self.scope, rows, working.root, working.size, offset_after, last_block
                    )
                    self._tree = working
                    self._cursor = offset_after
                    self._last_block = last_block
                    result.new_labels.extend(label for _, label, _ in rows)
            finally:
                self._state = AspState.IDLE

            result.root = self._tree.root
            result.size = self._tree.size
            result.cursor_offset = self._cursor
            result.last_block = self._last_block

        if result.new_labels:
            logger.info(
                f"ASP sync for scope {self.scope}: +{len(result.new_labels)} label(s), root={result.root}"
            )
        return result

    async def rebuild_from_deposits(self) -> SyncResult:
        """Discard local state and rebuild the tree from every deposit."""
        await self._ensure_ready()
        return await self._flight.run((self.scope, "rebuild"), self._rebuild)

    async def _rebuild(self) -> SyncResult:
        async with self._lock:
            self._state = AspState.SYNCING
            try:
                labels: List[int] = []
                rows: List[LabelRow] = []
                seen = set()
                cursor = 0
                last_block = 0
                async for offset_after, page in self.deposits.iter_deposit_pages(self.pool_address, 0):
                    cursor = offset_after
                    for event in page:
                        last_block = max(last_block, event.block_number)
                        if event.label in seen:
                            continue
                        if not await self._is_approved(event):
                            continue
                        seen.add(event.label)
                        rows.append((len(labels), event.label, event.block_number))
                        labels.append(event.label)

                tree = IncrementalTree.from_leaves(labels, hasher=self._hasher)
                await self.store.replace_all(self.scope, rows, tree.root, cursor, last_block)
                self._tree = tree
                self._cursor = cursor
                self._last_block = last_block
            finally:
                self._state = AspState.IDLE

        logger.info(f"ASP rebuild for scope {self.scope}: {len(labels)} label(s), root={tree.root}")
        return SyncResult(
            new_labels=labels, root=tree.root, size=tree.size,
            cursor_offset=cursor, last_block=last_block,
        )

    # ---------- On-chain ----------

    def _require_chain(self) -> RootPublisher:
        if self.chain is None:
            raise AspNotConfiguredError("on-chain access not configured (ENTRYPOINT_ADDRESS)")
        return self.chain

    async def get_on_chain_root(self) -> int:
        return await self._require_chain().latest_root()

    async def update_on_chain_root(self) -> PublishResult:
        """
        Publish the local root if it differs from the on-chain one. An empty
        tree is never published.
        """
        await self._ensure_ready()
        chain = self._require_chain()
        if not chain.can_publish:
            raise AspNotConfiguredError("ASP postman key not configured")
        return await self._flight.run((self.scope, "publish"), self._publish)

    async def _publish(self) -> PublishResult:
        chain = self._require_chain()
        # shares the sync lock: the tree cannot move between read and publish
        async with self._lock:
            self._state = AspState.SYNCING
            try:
                local_root = self._tree.root
                on_chain_root = await chain.latest_root()

                if local_root == 0 or local_root == on_chain_root:
                    return PublishResult(updated=False, root=local_root)

                tx_hash = await chain.update_root(local_root, self.content_cid)
                await self.store.mark_published(self.scope, local_root)
            finally:
                self._state = AspState.IDLE

        logger.info(f"Published ASP root {local_root} for scope {self.scope} in {tx_hash}")
        return PublishResult(updated=True, root=local_root, tx_hash=tx_hash)

    async def status(self) -> AspStatus:
        self._require_ready()
        local_root = self._tree.root
        on_chain_root = None
        error = None
        if self.chain is not None:
            try:
                on_chain_root = await self.chain.latest_root()
            except Exception as e:
                logger.warning(f"Could not read on-chain ASP root: {e}")
                error = str(e)
        return AspStatus(
            synced=on_chain_root is not None and on_chain_root == local_root,
            local_root=local_root,
            on_chain_root=on_chain_root,
            size=self._tree.size,
            depth=self._tree.depth,
            state=self._state,
            cursor_offset=self._cursor,
            last_block=self._last_block,
            error=error,
        )

    # ---------- Scheduling ----------

    async def sync_and_publish(self, publish: bool = config.ASP_AUTO_PUBLISH) -> Tuple[SyncResult, Optional[PublishResult]]:
        result = await self.process_new_deposits()
        published = None
        if publish and self.chain is not None and self.chain.can_publish:
            published = await self.update_on_chain_root()
        return result, published

    async def run_periodic(self, interval: float = config.ASP_SYNC_INTERVAL, stop: Optional[asyncio.Event] = None) -> None:
        """Sync (and publish) every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info(f"ASP periodic sync every {interval}s for scope {self.scope}")
        while not stop.is_set():
            try:
                await self.sync_and_publish()
            except Exception as e:
                # the next tick retries; the loop itself must keep running
                logger.error(f"ASP periodic sync failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
