# shielded_pool/crypto_core/tracer.py
"""
Nullifier-chain tracer.

Starting from recovered original deposits, follow each commitment's spend:

- unspent              -> it is a live balance, stop
- spent by withdrawal  -> record the withdrawal; a non-zero new commitment is
                          the change, derived at child_index + 1
- spent by merge       -> no record; the merged commitment (value + deposit)
                          is derived at child_index + 1

Only the spend-status oracle is consulted, so history is rebuilt without any
backend knowing which commitments belong to the user.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from shielded_pool.crypto_core.commitments import (
    MasterKeys,
    compute_commitment_hash,
    compute_precommitment,
    derive_lineage_secrets,
)
from shielded_pool.crypto_core.field import to_field
from shielded_pool.crypto_core.recovery import RecoveredDeposit

LOG = logging.getLogger("shielded_pool.tracer")
LOG.addHandler(logging.NullHandler())

MAX_TRACE_DEPTH = 50
DEFAULT_MAX_IN_FLIGHT = 4


class SpendInfoError(ValueError):
    """Spend data from the oracle is inconsistent with the traced commitment."""


# =========================
# Spend status
# =========================

@dataclass(frozen=True)
class TxInfo:
    tx_hash: str = ""
    block_number: int = 0
    block_timestamp: int = 0
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class Unspent:
    pass


@dataclass(frozen=True)
class SpentByWithdrawal:
    recipient: Optional[str]
    gross_value: int
    fee_amount: int = 0
    new_commitment: int = 0
    tx: TxInfo = TxInfo()

    @property
    def is_partial(self) -> bool:
        return self.new_commitment != 0


@dataclass(frozen=True)
class SpentByMerge:
    deposited_value: int
    new_commitment: int = 0
    tx: TxInfo = TxInfo()


SpendInfo = Union[Unspent, SpentByWithdrawal, SpentByMerge]
SpendLookup = Callable[[int], Awaitable[SpendInfo]]


def _tx_from(row: Mapping[str, Any]) -> TxInfo:
    chain_id = row.get("chainId")
    return TxInfo(
        tx_hash=str(row.get("transactionHash") or ""),
        block_number=int(row.get("blockNumber") or 0),
        block_timestamp=int(row.get("blockTimestamp") or 0),
        chain_id=int(chain_id) if chain_id is not None else None,
    )


def spend_info_from_dict(payload: Mapping[str, Any]) -> SpendInfo:
    """
    Parse the indexer's nullifier response:
    {spent, spentBy: "withdrawal"|"merge"|null, withdrawal, mergeDeposit}
    """
    if not payload.get("spent"):
        return Unspent()

    spent_by = payload.get("spentBy")
    if spent_by == "withdrawal" and payload.get("withdrawal"):
        w = payload["withdrawal"]
        return SpentByWithdrawal(
            recipient=w.get("recipient") or None,
            gross_value=int(w["value"]),
            fee_amount=int(w.get("feeAmount") or 0),
            new_commitment=to_field(w.get("newCommitment") or 0, "newCommitment"),
            tx=_tx_from(w),
        )
    if spent_by == "merge" and payload.get("mergeDeposit"):
        m = payload["mergeDeposit"]
        return SpentByMerge(
            deposited_value=int(m["depositValue"]),
            new_commitment=to_field(m.get("newCommitment") or 0, "newCommitment"),
            tx=_tx_from(m),
        )
    raise SpendInfoError(f"spent nullifier with unknown spend shape: spentBy={spent_by!r}")


# =========================
# Results
# =========================

@dataclass(frozen=True)
class WithdrawalRecord:
    tx_hash: str
    recipient: str
    net_amount: int
    fee_amount: int
    gross_value: int
    is_partial: bool
    block_number: int
    block_timestamp: int
    chain_id: Optional[int]
    label: int
    child_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "recipient": self.recipient,
            "amount": str(self.net_amount),
            "feeAmount": str(self.fee_amount),
            "grossValue": str(self.gross_value),
            "isPartial": self.is_partial,
            "blockNumber": self.block_number,
            "blockTimestamp": self.block_timestamp,
            "chainId": self.chain_id,
            "label": str(self.label),
            "childIndex": self.child_index,
        }


@dataclass
class TraceResult:
    withdrawals: List[WithdrawalRecord] = field(default_factory=list)
    unspent: List[RecoveredDeposit] = field(default_factory=list)
    truncated: bool = False
    truncated_labels: List[int] = field(default_factory=list)
    merges: int = 0

    @property
    def balance(self) -> int:
        return sum(d.value for d in self.unspent)

    def extend(self, other: "TraceResult") -> None:
        self.withdrawals.extend(other.withdrawals)
        self.unspent.extend(other.unspent)
        self.truncated = self.truncated or other.truncated
        self.truncated_labels.extend(other.truncated_labels)
        self.merges += other.merges

    def sorted_by_block(self, newest_first: bool = True) -> List[WithdrawalRecord]:
        return sorted(
            self.withdrawals,
            key=lambda w: (w.block_number, w.block_timestamp),
            reverse=newest_first,
        )


# =========================
# Tracing
# =========================

def _child(deposit: RecoveredDeposit, keys: MasterKeys, value: int, tx: TxInfo) -> RecoveredDeposit:
    secrets = derive_lineage_secrets(keys, deposit.label, deposit.child_index + 1)
    return RecoveredDeposit(
        index=deposit.index,
        nullifier=secrets.nullifier,
        secret=secrets.secret,
        precommitment_hash=compute_precommitment(secrets.nullifier, secrets.secret),
        value=value,
        label=deposit.label,
        block_number=tx.block_number,
        tx_hash=tx.tx_hash,
        child_index=secrets.child_index,
    )


def _check_new_commitment(child: RecoveredDeposit, expected: int) -> None:
    if expected and compute_commitment_hash(child.value, child.label, child.precommitment_hash) != expected:
        LOG.warning(
            f"Derived commitment at child_index={child.child_index} for label {child.label} "
            f"does not match the on-chain new commitment"
        )


async def trace_deposit(
    deposit: RecoveredDeposit,
    keys: MasterKeys,
    lookup: SpendLookup,
    collector: TraceResult,
    visited: Set[int],
    depth: int = 0,
    max_depth: int = MAX_TRACE_DEPTH,
    semaphore: Optional[asyncio.Semaphore] = None,
) -> None:
    """
    Follow one commitment's spend chain, appending to ``collector``.

    ``visited`` is keyed by nullifier hash and may be shared across deposits;
    a hash already seen ends the branch, so cyclic oracle data terminates.
    Hitting ``max_depth`` marks the result truncated rather than failing.

    Raises:
        SpendInfoError: when a withdrawal exceeds the commitment's value
    """
    if depth >= max_depth:
        LOG.warning(f"Trace depth {max_depth} reached for label {deposit.label}; history truncated")
        collector.truncated = True
        collector.truncated_labels.append(deposit.label)
        return

    nullifier_hash = deposit.nullifier_hash
    if nullifier_hash in visited:
        return
    visited.add(nullifier_hash)

    if semaphore is not None:
        async with semaphore:
            info = await lookup(nullifier_hash)
    else:
        info = await lookup(nullifier_hash)

    if isinstance(info, Unspent):
        collector.unspent.append(deposit)
        return

    if isinstance(info, SpentByWithdrawal):
        if info.gross_value > deposit.value:
            raise SpendInfoError(
                f"withdrawal of {info.gross_value} exceeds commitment value {deposit.value} "
                f"(label {deposit.label}, child_index {deposit.child_index})"
            )
        if info.fee_amount > info.gross_value:
            raise SpendInfoError(f"fee {info.fee_amount} exceeds withdrawn value {info.gross_value}")

        # recipient-less withdrawals carry no funds to a user and are not listed
        if info.recipient:
            collector.withdrawals.append(
                WithdrawalRecord(
                    tx_hash=info.tx.tx_hash,
                    recipient=info.recipient,
                    net_amount=info.gross_value - info.fee_amount,
                    fee_amount=info.fee_amount,
                    gross_value=info.gross_value,
                    is_partial=info.is_partial,
                    block_number=info.tx.block_number,
                    block_timestamp=info.tx.block_timestamp,
                    chain_id=info.tx.chain_id,
                    label=deposit.label,
                    child_index=deposit.child_index,
                )
            )

        if info.is_partial:
            change = _child(deposit, keys, deposit.value - info.gross_value, info.tx)
            _check_new_commitment(change, info.new_commitment)
            await trace_deposit(change, keys, lookup, collector, visited, depth + 1, max_depth, semaphore)
        return

    if isinstance(info, SpentByMerge):
        collector.merges += 1
        merged = _child(deposit, keys, deposit.value + info.deposited_value, info.tx)
        _check_new_commitment(merged, info.new_commitment)
        await trace_deposit(merged, keys, lookup, collector, visited, depth + 1, max_depth, semaphore)
        return

    raise SpendInfoError(f"unsupported spend info {type(info).__name__}")


async def trace_history(
    deposits: Sequence[RecoveredDeposit],
    keys: MasterKeys,
    lookup: SpendLookup,
    max_depth: int = MAX_TRACE_DEPTH,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
) -> TraceResult:
    """
    Trace every original deposit. Lineages run concurrently with at most
    ``max_in_flight`` oracle lookups outstanding; within a lineage each child
    is looked up only after its parent. Results are concatenated in deposit
    order.
    """
    if max_in_flight < 1:
        raise ValueError("max_in_flight must be >= 1")

    semaphore = asyncio.Semaphore(max_in_flight)
    visited: Set[int] = set()
    partials = [TraceResult() for _ in deposits]

    await asyncio.gather(
        *(
            trace_deposit(d, keys, lookup, partials[i], visited, 0, max_depth, semaphore)
            for i, d in enumerate(deposits)
        )
    )

    result = TraceResult()
    for part in partials:
        result.extend(part)

    LOG.info(
        f"Traced {len(deposits)} deposit(s): {len(result.withdrawals)} withdrawal(s), "
        f"{len(result.unspent)} unspent, truncated={result.truncated}"
    )
    return result
