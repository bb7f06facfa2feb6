# shielded_pool/asp/store.py
"""
Durable association-set state: approved labels in leaf order plus the
indexer cursor, one scope per row. Each sync batch is written in a single
transaction so the tree and the cursor never disagree after a crash.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

from shielded_pool.api.logging_config import get_logger
from shielded_pool.database.config import create_engine_for, init_database, make_session_factory
from shielded_pool.database.models import AspLabel, AspTreeState

logger = get_logger("asp.store")

# (leaf_index, label, block_number)
LabelRow = Tuple[int, int, int]


@dataclass
class AspSnapshot:
    scope: int
    labels: List[int] = field(default_factory=list)
    root: int = 0
    cursor_offset: int = 0
    last_block: int = 0
    last_published_root: int = 0


class AspStore:
    """SQLAlchemy-backed persistence for AssociationSetService."""

    def __init__(self, engine: Optional[AsyncEngine] = None, url: Optional[str] = None):
        self._owns_engine = engine is None
        self.engine = engine or create_engine_for(url)
        self._sessions = make_session_factory(self.engine)

    async def init(self) -> None:
        await init_database(self.engine)

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()

    async def load(self, scope: int) -> Optional[AspSnapshot]:
        key = str(scope)
        async with self._sessions() as session:
            state = await session.get(AspTreeState, key)
            if state is None:
                return None
            result = await session.execute(
                select(AspLabel.label).where(AspLabel.scope == key).order_by(AspLabel.leaf_index)
            )
            labels = [int(x) for x in result.scalars().all()]

        return AspSnapshot(
            scope=scope,
            labels=labels,
            root=int(state.root),
            cursor_offset=state.cursor_offset,
            last_block=state.last_block,
            last_published_root=int(state.last_published_root or 0),
        )

    async def persist_batch(
        self,
        scope: int,
        rows: Sequence[LabelRow],
        root: int,
        size: int,
        cursor_offset: int,
        last_block: int,
    ) -> None:
        """Append labels and move the cursor atomically."""
        key = str(scope)
        async with self._sessions() as session:
            async with session.begin():
                state = await session.get(AspTreeState, key)
                if state is None:
                    state = AspTreeState(scope=key, last_published_root="0")
                    session.add(state)
                for leaf_index, label, block in rows:
                    session.add(
                        AspLabel(scope=key, leaf_index=leaf_index, label=str(label), block_number=block)
                    )
                state.root = str(root)
                state.size = size
                state.cursor_offset = cursor_offset
                state.last_block = last_block
        logger.debug(f"Persisted {len(rows)} label(s) for scope {scope}, cursor={cursor_offset}")

    async def replace_all(
        self,
        scope: int,
        rows: Sequence[LabelRow],
        root: int,
        cursor_offset: int,
        last_block: int,
    ) -> None:
        """Drop the scope's labels and write a freshly rebuilt set."""
        key = str(scope)
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(delete(AspLabel).where(AspLabel.scope == key))
                state = await session.get(AspTreeState, key)
                if state is None:
                    state = AspTreeState(scope=key, last_published_root="0")
                    session.add(state)
                for leaf_index, label, block in rows:
                    session.add(
                        AspLabel(scope=key, leaf_index=leaf_index, label=str(label), block_number=block)
                    )
                state.root = str(root)
                state.size = len(rows)
                state.cursor_offset = cursor_offset
                state.last_block = last_block
        logger.info(f"Rebuilt association set for scope {scope}: {len(rows)} label(s)")

    async def mark_published(self, scope: int, root: int) -> None:
        key = str(scope)
        async with self._sessions() as session:
            async with session.begin():
                state = await session.get(AspTreeState, key)
                if state is None:
                    state = AspTreeState(scope=key, root="0", size=0, cursor_offset=0, last_block=0)
                    session.add(state)
                state.last_published_root = str(root)
