# shielded_pool/crypto_core/recovery.py
"""
Recover a user's pool deposits from public deposit events.

Nothing about a deposit is stored off-chain: the user re-derives the secrets
for index 0, 1, 2, ... and looks for a deposit event carrying the matching
precommitment hash.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from shielded_pool.crypto_core.commitments import (
    DepositSecrets,
    MasterKeys,
    compute_commitment_hash,
    compute_nullifier_hash,
    derive_deposit_secrets,
)
from shielded_pool.crypto_core.field import FieldLike, to_field, to_hex32

LOG = logging.getLogger("shielded_pool.recovery")
LOG.addHandler(logging.NullHandler())

# Highest number of deposit indices probed per scope
SEARCH_WINDOW = 50
# Stop probing after this many indices in a row found nothing
MAX_CONSECUTIVE_MISSES = 10


class RecoveryError(ValueError):
    """Raised for malformed recovery arguments."""


@dataclass(frozen=True)
class DepositEvent:
    precommitment_hash: int
    value: int
    label: int
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0
    commitment: Optional[int] = None

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "DepositEvent":
        """Parse an indexer row (camelCase keys, numbers as decimal or hex strings)."""
        commitment = row.get("commitment")
        return cls(
            precommitment_hash=to_field(row["precommitmentHash"], "precommitmentHash"),
            value=int(row["value"]),
            label=to_field(row["label"], "label"),
            block_number=int(row.get("blockNumber") or 0),
            tx_hash=str(row.get("transactionHash") or row.get("txHash") or ""),
            log_index=int(row.get("logIndex") or 0),
            commitment=to_field(commitment, "commitment") if commitment is not None else None,
        )


@dataclass(frozen=True)
class RecoveredDeposit:
    """
    A commitment the user can spend: a deposit event matched to its secrets,
    or (when traced) a later commitment in the same lineage.
    """
    index: int
    nullifier: int
    secret: int
    precommitment_hash: int
    value: int
    label: int
    block_number: int = 0
    tx_hash: str = ""
    child_index: int = 0

    @property
    def secrets(self) -> DepositSecrets:
        return DepositSecrets(
            nullifier=self.nullifier,
            secret=self.secret,
            label=self.label,
            child_index=self.child_index,
        )

    @property
    def nullifier_hash(self) -> int:
        return compute_nullifier_hash(self.nullifier)

    @property
    def commitment_hash(self) -> int:
        return compute_commitment_hash(self.value, self.label, self.precommitment_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "childIndex": self.child_index,
            "value": str(self.value),
            "label": str(self.label),
            "precommitmentHash": to_hex32(self.precommitment_hash),
            "commitment": to_hex32(self.commitment_hash),
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
        }

    def __repr__(self) -> str:
        return (
            f"RecoveredDeposit(index={self.index}, child_index={self.child_index}, "
            f"value={self.value}, label={self.label})"
        )


def recover_deposits(
    keys: MasterKeys,
    scope: FieldLike,
    events: Iterable[DepositEvent],
    search_window: int = SEARCH_WINDOW,
    max_consecutive_misses: Optional[int] = MAX_CONSECUTIVE_MISSES,
) -> List[RecoveredDeposit]:
    """
    Match derived precommitments against deposit events.

    Args:
        keys: user's master keys
        scope: pool scope (domain separator)
        events: deposit events of that pool, any order
        search_window: number of indices probed (0 .. search_window-1)
        max_consecutive_misses: stop early after this many misses in a row;
            None probes the whole window

    Returns:
        deposits ordered by index; empty when the user has none

    Raises:
        RecoveryError: on invalid arguments, before any hashing
    """
    if not isinstance(keys, MasterKeys):
        raise RecoveryError("keys must be MasterKeys")
    try:
        scope = to_field(scope, "scope")
    except ValueError as e:
        raise RecoveryError(str(e)) from e
    if search_window < 1:
        raise RecoveryError("search_window must be >= 1")
    if max_consecutive_misses is not None and max_consecutive_misses < 1:
        raise RecoveryError("max_consecutive_misses must be >= 1 or None")

    by_precommitment: Dict[int, DepositEvent] = {}
    for event in events:
        by_precommitment.setdefault(event.precommitment_hash, event)

    if not by_precommitment:
        return []

    found: List[RecoveredDeposit] = []
    consumed = set()
    misses = 0

    for index in range(search_window):
        secrets = derive_deposit_secrets(keys, scope, index)
        pre = secrets.precommitment
        event = by_precommitment.get(pre)

        if event is None or pre in consumed:
            misses += 1
            if max_consecutive_misses is not None and misses >= max_consecutive_misses:
                break
            continue

        misses = 0
        consumed.add(pre)
        found.append(
            RecoveredDeposit(
                index=index,
                nullifier=secrets.nullifier,
                secret=secrets.secret,
                precommitment_hash=pre,
                value=event.value,
                label=event.label,
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                child_index=0,
            )
        )

    LOG.debug(f"Recovered {len(found)} deposit(s) from {len(by_precommitment)} event(s)")
    return found


async def filter_unspent(
    deposits: Iterable[RecoveredDeposit],
    is_spent: Callable[[int], Awaitable[bool]],
) -> List[RecoveredDeposit]:
    """Keep deposits whose nullifier hash has not been revealed on-chain."""
    out = []
    for d in deposits:
        if not await is_spent(d.nullifier_hash):
            out.append(d)
    return out
