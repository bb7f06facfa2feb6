"""
Preflight checks before a private send (withdrawal proof + relay).

Proving takes tens of seconds, so the client asks first whether a proof
built right now would be accepted: indexer caught up, association set in
sync with the chain, indexed state tree matching the pool's on-chain root,
and the deposit label approved. A stale association set triggers an
on-demand sync before the verdict.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from shielded_pool.api.logging_config import get_logger
from shielded_pool.asp.service import AssociationSetService
from shielded_pool.crypto_core.field import to_field
from shielded_pool.crypto_core.prover import STATE_RESYNC_RETRY_MS
from shielded_pool.indexer.client import IndexerClient, fetch_state_tree

logger = get_logger("preflight")


@dataclass
class PreflightChecks:
    indexer_synced: bool = False
    asp_synced: bool = False
    state_tree_valid: bool = False
    label_exists: bool = False


@dataclass
class PreflightResult:
    can_proceed: bool
    checks: PreflightChecks
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    retry_after_ms: Optional[int] = None
    local_state_root: Optional[int] = None
    on_chain_state_root: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for k in ("local_state_root", "on_chain_state_root"):
            if d[k] is not None:
                d[k] = str(d[k])
        return d


class PreflightService:
    def __init__(
        self,
        indexer: IndexerClient,
        asp: Optional[AssociationSetService],
        state_root_reader=None,
    ):
        """
        Args:
            indexer: indexer client (readiness + state tree leaves)
            asp: the association-set service, None when not configured
            state_root_reader: object with ``async pool_state_root() -> int``
                (EntrypointClient); None skips the on-chain comparison
        """
        self.indexer = indexer
        self.asp = asp
        self.state_root_reader = state_root_reader

    async def check_indexer(self) -> bool:
        return await self.indexer.ready()

    async def check_asp(self) -> Dict[str, Any]:
        if self.asp is None:
            return {"synced": False, "local_root": 0, "on_chain_root": None}
        try:
            await self.asp.initialize()
            status = await self.asp.status()
            return {
                "synced": status.synced,
                "local_root": status.local_root,
                "on_chain_root": status.on_chain_root,
            }
        except Exception as e:
            logger.warning(f"ASP status check failed: {e}")
            return {"synced": False, "local_root": 0, "on_chain_root": None}

    async def check_state_tree(self, pool: str) -> Dict[str, Any]:
        try:
            tree = await fetch_state_tree(self.indexer, pool)
            if self.state_root_reader is None:
                return {"valid": tree.size > 0, "local_root": tree.root, "on_chain_root": None}
            on_chain = await self.state_root_reader.pool_state_root()
        except Exception as e:
            logger.error(f"State tree check failed: {e}")
            return {"valid": False, "local_root": 0, "on_chain_root": None}

        valid = tree.size > 0 and tree.root == on_chain
        return {"valid": valid, "local_root": tree.root, "on_chain_root": on_chain}

    async def check_label(self, label: int) -> bool:
        if self.asp is None:
            return False
        try:
            await self.asp.initialize()
            return self.asp.has_label(label)
        except Exception as e:
            logger.warning(f"ASP label check failed: {e}")
            return False

    async def preflight_private_send(self, pool: str, label: Any) -> PreflightResult:
        """
        Raises:
            ValueError: label is not a field element
        """
        label = to_field(label, "label")
        errors: List[str] = []
        warnings: List[str] = []

        indexer_ok, asp_check, state_check, label_ok = await asyncio.gather(
            self.check_indexer(),
            self.check_asp(),
            self.check_state_tree(pool),
            self.check_label(label),
        )

        if (not asp_check["synced"] or not label_ok) and self.asp is not None:
            logger.info("ASP not synced, attempting on-demand sync...")
            try:
                result = await self.asp.process_new_deposits()
                if result.new_labels and self.asp.chain is not None and self.asp.chain.can_publish:
                    await self.asp.update_on_chain_root()
                asp_check = await self.check_asp()
                if not label_ok:
                    label_ok = self.asp.has_label(label)
                if asp_check["synced"]:
                    warnings.append("ASP synced on-demand")
            except Exception as e:
                logger.error(f"On-demand ASP sync failed: {e}")
                warnings.append("Auto-sync attempted but failed")

        if not indexer_ok:
            errors.append("Indexer not ready. Waiting for sync to complete...")
        if not asp_check["synced"]:
            if asp_check["on_chain_root"] is None:
                errors.append("ASP service unavailable")
            else:
                errors.append("ASP tree not synced with on-chain root. Waiting for sync...")
        if not state_check["valid"]:
            if state_check["local_root"] == 0:
                errors.append("No merkle leaves found in indexer")
            else:
                errors.append("State tree root mismatch. Indexer may be syncing...")
        if not label_ok:
            errors.append("Deposit label not found in ASP tree. It may not be approved yet.")

        can_proceed = not errors
        return PreflightResult(
            can_proceed=can_proceed,
            checks=PreflightChecks(
                indexer_synced=indexer_ok,
                asp_synced=asp_check["synced"],
                state_tree_valid=state_check["valid"],
                label_exists=label_ok,
            ),
            errors=errors,
            warnings=warnings,
            retry_after_ms=None if can_proceed else STATE_RESYNC_RETRY_MS,
            local_state_root=state_check["local_root"],
            on_chain_state_root=state_check["on_chain_root"],
        )
