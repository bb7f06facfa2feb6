"""
Shielded pool test fixtures
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from shielded_pool.asp.store import AspStore
from shielded_pool.crypto_core.commitments import (
    MasterKeys,
    compute_commitment_hash,
    derive_deposit_secrets,
)
from shielded_pool.crypto_core.field import SNARK_SCALAR_FIELD
from shielded_pool.crypto_core.recovery import DepositEvent
from shielded_pool.crypto_core.tracer import SpendInfo, Unspent

ETH = 10**18


def cheap_hash(left: int, right: int) -> int:
    """Non-commutative stand-in for Poseidon in tree-shape tests."""
    return (left * 1_000_003 + right * 7919 + 17) % SNARK_SCALAR_FIELD


@pytest.fixture
def keys() -> MasterKeys:
    return MasterKeys(master_nullifier=111_111, master_secret=222_222)


@pytest.fixture
def other_keys() -> MasterKeys:
    return MasterKeys(master_nullifier=333_333, master_secret=444_444)


@pytest.fixture
def scope() -> int:
    return 0xABCDEF


def make_deposit_event(
    keys: MasterKeys,
    scope: int,
    index: int,
    value: int,
    label: int,
    block: int = 1,
) -> DepositEvent:
    secrets = derive_deposit_secrets(keys, scope, index)
    pre = secrets.precommitment
    return DepositEvent(
        precommitment_hash=pre,
        value=value,
        label=label,
        block_number=block,
        tx_hash=f"0x{index:064x}",
        log_index=index,
        commitment=compute_commitment_hash(value, label, pre),
    )


class FakeSpendOracle:
    """Nullifier hash -> SpendInfo; everything else is unspent."""

    def __init__(self, entries: Optional[Dict[int, SpendInfo]] = None, delay: float = 0.0):
        self.entries: Dict[int, SpendInfo] = dict(entries or {})
        self.delay = delay
        self.calls: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, nullifier_hash: int) -> SpendInfo:
        self.calls.append(nullifier_hash)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.entries.get(nullifier_hash, Unspent())
        finally:
            self.in_flight -= 1


class FakeDepositSource:
    """In-memory indexer exposing iter_deposit_pages."""

    def __init__(self, events: Optional[List[DepositEvent]] = None, page_size: int = 2):
        self.events: List[DepositEvent] = list(events or [])
        self.page_size = page_size
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def iter_deposit_pages(self, pool: str, offset: int = 0):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        while offset < len(self.events):
            page = self.events[offset:offset + self.page_size]
            offset += len(page)
            yield offset, page


class FakeChain:
    """Entrypoint stand-in: update_root becomes the new latest root."""

    def __init__(self, root: int = 0, can_publish: bool = True):
        self.root = root
        self.can_publish = can_publish
        self.published: List[Tuple[int, str]] = []
        self.fail_reads = False

    async def latest_root(self) -> int:
        if self.fail_reads:
            raise RuntimeError("rpc down")
        return self.root

    async def update_root(self, root: int, ipfs_cid: str) -> str:
        self.published.append((root, ipfs_cid))
        self.root = root
        return f"0x{len(self.published):064x}"


class FakeBackend:
    """Proving backend that echoes the expected public signals."""

    def __init__(self, signals: Optional[List[int]] = None, fail: Optional[Exception] = None):
        self.signals = signals
        self.fail = fail
        self.inputs: List[Dict[str, Any]] = []

    def full_prove(self, inputs, artifacts):
        self.inputs.append(inputs)
        if self.fail is not None:
            raise self.fail
        proof = {
            "pi_a": ["1", "2", "1"],
            "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
            "pi_c": ["7", "8", "1"],
            "protocol": "groth16",
            "curve": "bn128",
        }
        return proof, [str(s) for s in (self.signals or [])]

    def verify(self, vkey_path, public_signals, proof) -> bool:
        return True


@pytest.fixture
def spend_oracle() -> FakeSpendOracle:
    return FakeSpendOracle()


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
async def asp_store(tmp_path):
    store = AspStore(url=f"sqlite+aiosqlite:///{tmp_path / 'asp.db'}")
    await store.init()
    yield store
    await store.close()
