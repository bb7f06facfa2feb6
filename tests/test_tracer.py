"""
Nullifier-chain tracer tests
"""
import logging

import pytest

from conftest import ETH, FakeSpendOracle, make_deposit_event
from shielded_pool.crypto_core.commitments import (
    compute_commitment_hash,
    compute_nullifier_hash,
    derive_lineage_secrets,
)
from shielded_pool.crypto_core.recovery import recover_deposits
from shielded_pool.crypto_core.tracer import (
    SpendInfoError,
    SpentByMerge,
    SpentByWithdrawal,
    TraceResult,
    TxInfo,
    Unspent,
    spend_info_from_dict,
    trace_deposit,
    trace_history,
)

RECIPIENT = "0x" + "ab" * 20


def _deposits(keys, scope, values, labels=None):
    labels = labels or [100 + i for i in range(len(values))]
    events = [make_deposit_event(keys, scope, i, v, labels[i], block=10 + i) for i, v in enumerate(values)]
    return recover_deposits(keys, scope, events)


def _child_nh(keys, label, child_index):
    return compute_nullifier_hash(derive_lineage_secrets(keys, label, child_index).nullifier)


def _child_commitment(keys, label, child_index, value):
    s = derive_lineage_secrets(keys, label, child_index)
    return compute_commitment_hash(value, label, s.precommitment)


def _withdrawal(gross, fee=0, new_commitment=0, recipient=RECIPIENT, block=50):
    return SpentByWithdrawal(
        recipient=recipient,
        gross_value=gross,
        fee_amount=fee,
        new_commitment=new_commitment,
        tx=TxInfo(tx_hash=f"0x{block:064x}", block_number=block, block_timestamp=1_700_000_000 + block, chain_id=1),
    )


class TestSinglePartialWithdrawal:
    """1 ETH deposit, 0.4 ETH withdrawn with a 0.01 ETH fee."""

    async def test_record_and_change(self, keys, scope):
        """Net 0.39 to the recipient, 0.6 left at child index 1."""
        (d,) = _deposits(keys, scope, [ETH])
        change_value = 6 * 10**17
        oracle = FakeSpendOracle({
            d.nullifier_hash: _withdrawal(
                4 * 10**17, 10**16,
                new_commitment=_child_commitment(keys, d.label, 1, change_value),
            ),
        })

        result = await trace_history([d], keys, oracle)

        (w,) = result.withdrawals
        assert w.net_amount == 39 * 10**16
        assert w.fee_amount == 10**16
        assert w.gross_value == 4 * 10**17
        assert w.is_partial
        assert w.recipient == RECIPIENT
        assert w.child_index == 0

        (tip,) = result.unspent
        assert tip.value == change_value
        assert tip.child_index == 1
        assert tip.label == d.label
        assert result.balance == change_value
        assert not result.truncated

    async def test_value_conserved(self, keys, scope):
        """Withdrawn gross plus live balance equals deposits."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({
            d.nullifier_hash: _withdrawal(3 * 10**17, 0, new_commitment=1),
            _child_nh(keys, d.label, 1): _withdrawal(2 * 10**17, 10**15, new_commitment=1, block=60),
        })
        result = await trace_history([d], keys, oracle)
        gross = sum(w.gross_value for w in result.withdrawals)
        assert gross + result.balance == ETH
        assert [u.child_index for u in result.unspent] == [2]

    async def test_mismatched_new_commitment_only_warns(self, keys, scope, caplog):
        """A wrong on-chain new commitment is logged, not fatal."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(ETH // 2, new_commitment=12345)})
        tracer_log = logging.getLogger("shielded_pool.tracer")
        tracer_log.addHandler(caplog.handler)
        try:
            with caplog.at_level(logging.WARNING, logger="shielded_pool.tracer"):
                result = await trace_history([d], keys, oracle)
        finally:
            tracer_log.removeHandler(caplog.handler)
        assert result.balance == ETH // 2
        assert any("does not match" in r.message for r in caplog.records)


class TestWithdrawalShapes:
    """Full withdrawals and recipient-less spends."""

    async def test_full_withdrawal_ends_lineage(self, keys, scope):
        """No new commitment: nothing unspent, one record."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(ETH, 10**16)})
        result = await trace_history([d], keys, oracle)
        assert len(result.withdrawals) == 1
        assert not result.withdrawals[0].is_partial
        assert result.unspent == []
        assert result.balance == 0

    async def test_recipientless_withdrawal_not_recorded(self, keys, scope):
        """Change is still followed."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(ETH // 4, recipient=None, new_commitment=1)})
        result = await trace_history([d], keys, oracle)
        assert result.withdrawals == []
        assert result.balance == ETH - ETH // 4

    async def test_withdrawal_above_value_raises(self, keys, scope):
        """Oracle data inconsistent with the lineage."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(2 * ETH)})
        with pytest.raises(SpendInfoError):
            await trace_history([d], keys, oracle)

    async def test_fee_above_gross_raises(self, keys, scope):
        """Fee cannot exceed the withdrawn value."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(ETH // 2, fee=ETH)})
        with pytest.raises(SpendInfoError):
            await trace_history([d], keys, oracle)


class TestMerge:
    """Merge deposits fold new value into the lineage."""

    async def test_merge_then_withdraw(self, keys, scope):
        """0.5 + 0.3 merged, then 0.2 withdrawn from the merged commitment."""
        (d,) = _deposits(keys, scope, [5 * 10**17])
        oracle = FakeSpendOracle({
            d.nullifier_hash: SpentByMerge(deposited_value=3 * 10**17, new_commitment=0),
            _child_nh(keys, d.label, 1): _withdrawal(2 * 10**17, new_commitment=1),
        })
        result = await trace_history([d], keys, oracle)
        assert result.merges == 1
        (w,) = result.withdrawals
        assert w.child_index == 1
        (tip,) = result.unspent
        assert tip.value == 6 * 10**17
        assert tip.child_index == 2


class TestConservation:
    """Value is conserved across alternating merges and partial withdrawals."""

    @pytest.mark.parametrize("depth", [1, 3, 8])
    async def test_alternating_lineage(self, keys, scope, depth):
        """Live value is initial + merged - withdrawn; recipients get gross - fee."""
        initial = ETH
        (d,) = _deposits(keys, scope, [initial])
        merged = [(i + 1) * 10**16 for i in range(depth)]
        withdrawn = [(i + 2) * 10**15 for i in range(depth)]
        fees = [(i % 3) * 10**14 for i in range(depth)]

        entries = {}
        value = initial
        for i in range(depth):
            merge_index, withdraw_index = 2 * i, 2 * i + 1
            merge_nh = d.nullifier_hash if merge_index == 0 else _child_nh(keys, d.label, merge_index)
            value += merged[i]
            entries[merge_nh] = SpentByMerge(
                deposited_value=merged[i],
                new_commitment=_child_commitment(keys, d.label, merge_index + 1, value),
            )
            value -= withdrawn[i]
            entries[_child_nh(keys, d.label, withdraw_index)] = _withdrawal(
                withdrawn[i], fees[i],
                new_commitment=_child_commitment(keys, d.label, withdraw_index + 1, value),
                block=100 + i,
            )

        result = await trace_history([d], keys, FakeSpendOracle(entries))

        assert not result.truncated
        assert result.merges == depth
        assert len(result.withdrawals) == depth
        (tip,) = result.unspent
        assert tip.child_index == 2 * depth
        assert result.balance == initial + sum(merged) - sum(withdrawn)
        assert sum(w.net_amount for w in result.withdrawals) == sum(w - f for w, f in zip(withdrawn, fees))
        assert [w.child_index for w in result.withdrawals] == [2 * i + 1 for i in range(depth)]


class TestTermination:
    """Cycles and depth limits."""

    async def test_cycle_terminates(self, keys, scope):
        """Lineage revisiting a nullifier hash stops."""
        (d,) = _deposits(keys, scope, [ETH])
        oracle = FakeSpendOracle({d.nullifier_hash: _withdrawal(1, new_commitment=1)})
        collector = TraceResult()
        visited = {_child_nh(keys, d.label, 1)}
        await trace_deposit(d, keys, oracle, collector, visited)
        assert len(collector.withdrawals) == 1
        assert collector.unspent == []
        assert oracle.calls == [d.nullifier_hash]

    async def test_merge_cycle_terminates(self, keys, scope):
        """Two lineages that keep merging into each other stop at the depth cap."""
        a, b = _deposits(keys, scope, [ETH, ETH])
        withdrawal_nh = _child_nh(keys, a.label, 1)
        calls = []

        async def cyclic_oracle(nullifier_hash):
            calls.append(nullifier_hash)
            if nullifier_hash == withdrawal_nh:
                return _withdrawal(1, new_commitment=1)
            return SpentByMerge(deposited_value=1)

        result = await trace_history([a, b, a], keys, cyclic_oracle, max_depth=6)

        assert result.truncated
        assert result.truncated_labels == [a.label, b.label]
        assert result.unspent == []
        assert len(result.withdrawals) == 1
        assert result.withdrawals[0].child_index == 1
        assert len(calls) == len(set(calls)) == 12

    async def test_depth_limit_truncates(self, keys, scope):
        """Long chains are cut and flagged, not failed."""
        (d,) = _deposits(keys, scope, [ETH])
        entries = {d.nullifier_hash: _withdrawal(1, new_commitment=1)}
        for child in range(1, 10):
            entries[_child_nh(keys, d.label, child)] = _withdrawal(1, new_commitment=1, block=50 + child)
        oracle = FakeSpendOracle(entries)

        result = await trace_history([d], keys, oracle, max_depth=3)
        assert result.truncated
        assert result.truncated_labels == [d.label]
        assert len(result.withdrawals) == 3
        assert result.unspent == []


class TestConcurrency:
    """Lineages traced in parallel keep deposit order."""

    async def test_order_and_bound(self, keys, scope):
        """Results follow deposit order, lookups stay under the cap."""
        deposits = _deposits(keys, scope, [ETH, 2 * ETH, 3 * ETH, 4 * ETH, 5 * ETH])
        entries = {
            d.nullifier_hash: _withdrawal(d.value // 2, new_commitment=1, block=100 - i)
            for i, d in enumerate(deposits)
        }
        oracle = FakeSpendOracle(entries, delay=0.01)

        result = await trace_history(deposits, keys, oracle, max_in_flight=2)
        assert [w.label for w in result.withdrawals] == [d.label for d in deposits]
        assert [u.label for u in result.unspent] == [d.label for d in deposits]
        assert oracle.max_in_flight <= 2
        assert result.balance == sum(d.value - d.value // 2 for d in deposits)

    async def test_sorted_by_block(self, keys, scope):
        """Newest first by default."""
        deposits = _deposits(keys, scope, [ETH, ETH])
        oracle = FakeSpendOracle({
            deposits[0].nullifier_hash: _withdrawal(ETH, block=10),
            deposits[1].nullifier_hash: _withdrawal(ETH, block=20),
        })
        result = await trace_history(deposits, keys, oracle)
        assert [w.block_number for w in result.sorted_by_block()] == [20, 10]

    async def test_invalid_max_in_flight(self, keys):
        """At least one lookup must be allowed."""
        with pytest.raises(ValueError):
            await trace_history([], keys, FakeSpendOracle(), max_in_flight=0)


class TestSpendInfoParsing:
    """Indexer nullifier payloads."""

    def test_unspent(self):
        """spent=false."""
        assert isinstance(spend_info_from_dict({"spent": False, "spentBy": None}), Unspent)

    def test_withdrawal(self):
        """Withdrawal payload maps onto SpentByWithdrawal."""
        info = spend_info_from_dict({
            "spent": True,
            "spentBy": "withdrawal",
            "withdrawal": {
                "value": "400", "feeAmount": "10", "recipient": RECIPIENT,
                "newCommitment": "0x05", "transactionHash": "0x1",
                "blockNumber": "7", "blockTimestamp": "99", "chainId": 1,
            },
        })
        assert isinstance(info, SpentByWithdrawal)
        assert info.gross_value == 400
        assert info.fee_amount == 10
        assert info.new_commitment == 5
        assert info.tx.block_number == 7

    def test_merge(self):
        """Merge payload maps onto SpentByMerge."""
        info = spend_info_from_dict({
            "spent": True,
            "spentBy": "merge",
            "mergeDeposit": {"depositValue": "300", "newCommitment": "9"},
        })
        assert isinstance(info, SpentByMerge)
        assert info.deposited_value == 300

    def test_unknown_shape(self):
        """Spent without details is an error."""
        with pytest.raises(SpendInfoError):
            spend_info_from_dict({"spent": True, "spentBy": "other"})
