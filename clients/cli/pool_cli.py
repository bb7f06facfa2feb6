#!/usr/bin/env python3
# clients/cli/pool_cli.py
"""
Command line front end for the shielded pool.

    recover       list the deposits your master keys own in a pool
    history       trace every lineage: withdrawals, live commitments, balance
    prove         build and prove a withdrawal from the tip of a lineage
    asp-status    local vs on-chain association root
    asp-sync      pull new deposits into the association set (and publish)
    format-proof  turn snarkjs proof.json + public.json into verifier calldata

Master keys come from --master-nullifier/--master-secret or the
MASTER_NULLIFIER / MASTER_SECRET environment variables.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from shielded_pool import config
from shielded_pool.api.logging_config import setup_logging
from shielded_pool.asp.postman import EntrypointClient
from shielded_pool.asp.service import AssociationSetService
from shielded_pool.asp.store import AspStore
from shielded_pool.crypto_core.commitments import MasterKeys, compute_withdrawal_context
from shielded_pool.crypto_core.field import to_field
from shielded_pool.crypto_core.prover import (
    Groth16Proof,
    ProverStatus,
    WithdrawalProof,
    build_withdrawal_input,
    encode_proof_as_bytes,
    format_proof_for_contract,
    validate_tip,
    verify_proof_locally,
)
from shielded_pool.crypto_core.prover_client import ProverClient
from shielded_pool.crypto_core.recovery import RecoveredDeposit, recover_deposits
from shielded_pool.crypto_core.tracer import TraceResult, trace_history
from shielded_pool.indexer.client import IndexerClient, fetch_state_tree


class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


def _short(h: str) -> str:
    return f"{h[:6]}…{h[-4:]}" if h and len(h) > 12 else h


def _fmt_amount(wei: int) -> str:
    return f"{wei / 10**18:.6f}"


# ---------- Context ----------

def _keys(args) -> MasterKeys:
    mn = args.master_nullifier or os.getenv("MASTER_NULLIFIER")
    ms = args.master_secret or os.getenv("MASTER_SECRET")
    if not mn or not ms:
        raise SystemExit(f"{C.ERR}Master keys missing: pass --master-nullifier/--master-secret "
                         f"or set MASTER_NULLIFIER/MASTER_SECRET{C.RST}")
    return MasterKeys.from_values(mn, ms)


def _chain(args) -> EntrypointClient:
    return EntrypointClient(
        rpc_url=args.rpc_url,
        entrypoint_address=args.entrypoint or "",
        pool_address=args.pool,
    )


async def _scope(args, chain: Optional[EntrypointClient] = None) -> int:
    if args.scope:
        return to_field(args.scope, "scope")
    if config.POOL_SCOPE:
        return to_field(config.POOL_SCOPE, "POOL_SCOPE")
    chain = chain or _chain(args)
    return await chain.pool_scope()


async def _recover(args, indexer: IndexerClient) -> List[RecoveredDeposit]:
    keys = _keys(args)
    scope = await _scope(args)
    events = await indexer.get_all_deposits(args.pool)
    print(f"{C.DIM}{len(events)} deposit event(s) in pool {args.pool}{C.RST}")
    return recover_deposits(keys, scope, events, search_window=args.window)


async def _trace(args, indexer: IndexerClient) -> TraceResult:
    deposits = await _recover(args, indexer)
    return await trace_history(deposits, _keys(args), indexer.get_spend_info)


# ---------- Commands ----------

async def cmd_recover(args) -> int:
    async with IndexerClient(base_url=args.indexer) as indexer:
        deposits = await _recover(args, indexer)
    if not deposits:
        print(f"{C.WARN}No deposits found for these keys.{C.RST}")
        return 0
    print(f"{C.BOLD}Recovered {len(deposits)} deposit(s){C.RST}")
    for d in deposits:
        print(f"  #{d.index:<3} value={_fmt_amount(d.value)} label={_short(hex(d.label))} "
              f"block={d.block_number} tx={_short(d.tx_hash)}")
    if args.json:
        print(json.dumps([d.to_dict() for d in deposits], indent=2))
    return 0


async def cmd_history(args) -> int:
    async with IndexerClient(base_url=args.indexer) as indexer:
        result = await _trace(args, indexer)

    print(f"{C.BOLD}Withdrawals ({len(result.withdrawals)}){C.RST}")
    for w in result.sorted_by_block():
        kind = "partial" if w.is_partial else "full"
        print(f"  block {w.block_number:<9} {_fmt_amount(w.net_amount):>14} -> {_short(w.recipient)} "
              f"{C.DIM}fee={_fmt_amount(w.fee_amount)} {kind} tx={_short(w.tx_hash)}{C.RST}")

    print(f"{C.BOLD}Live commitments ({len(result.unspent)}){C.RST}")
    for d in result.unspent:
        print(f"  label={_short(hex(d.label))} child={d.child_index} value={_fmt_amount(d.value)}")
    print(f"{C.OK}Balance: {_fmt_amount(result.balance)}{C.RST}")
    if result.merges:
        print(f"{C.DIM}{result.merges} merge(s) folded into lineages{C.RST}")
    if result.truncated:
        print(f"{C.WARN}History truncated for {len(result.truncated_labels)} lineage(s); "
              f"older entries may be missing{C.RST}")
    if args.json:
        print(json.dumps({
            "withdrawals": [w.to_dict() for w in result.withdrawals],
            "unspent": [d.to_dict() for d in result.unspent],
            "balance": str(result.balance),
            "truncated": result.truncated,
        }, indent=2))
    return 0


def _print_status(status: ProverStatus) -> None:
    pct = f" {status.progress}%" if status.progress is not None else ""
    color = C.ERR if status.error else C.DIM
    print(f"{color}[{status.stage}{pct}] {status.message or status.error or ''}{C.RST}")


async def cmd_prove(args) -> int:
    keys = _keys(args)
    label = to_field(args.label, "label")
    chain = _chain(args)

    async with IndexerClient(base_url=args.indexer) as indexer:
        result = await _trace(args, indexer)
        tips = [d for d in result.unspent if d.label == label]
        if not tips:
            print(f"{C.ERR}No unspent commitment for label {args.label}{C.RST}")
            return 1
        tip = tips[0]
        await validate_tip(tip, indexer.get_spend_info)

        scope = await _scope(args, chain)
        state_tree = await fetch_state_tree(indexer, args.pool)
        on_chain_root = await chain.pool_state_root()
        published_asp_root = await chain.latest_root()

        asp = _asp_service(args, chain, scope, indexer)
        try:
            await asp.process_new_deposits()
            inp = build_withdrawal_input(
                tip, keys, int(args.amount), state_tree, asp.tree,
                context=compute_withdrawal_context(args.processooor, args.data, scope),
                authoritative_state_root=on_chain_root,
                authoritative_asp_root=published_asp_root,
            )
        finally:
            await asp.close()

    with ProverClient() as prover:
        proof = await prover.prove_withdrawal(inp, on_progress=_print_status)

    if args.verify:
        if not await asyncio.to_thread(verify_proof_locally, proof):
            print(f"{C.ERR}Proof failed local verification{C.RST}")
            return 1
        print(f"{C.OK}Proof verified locally{C.RST}")

    out = format_proof_for_contract(proof)
    payload = {
        "pA": [str(x) for x in out["pA"]],
        "pB": [[str(x) for x in pair] for pair in out["pB"]],
        "pC": [str(x) for x in out["pC"]],
        "publicSignals": [str(x) for x in out["publicSignals"]],
        "proof": proof.proof.to_dict(),
    }
    if args.out:
        Path(args.out).write_text(json.dumps(payload, indent=2))
        print(f"{C.OK}Proof written to {args.out}{C.RST}")
    else:
        print(json.dumps(payload, indent=2))
    return 0


def _asp_service(args, chain: EntrypointClient, scope: int, indexer: IndexerClient) -> AssociationSetService:
    return AssociationSetService(
        scope=scope,
        pool_address=args.pool,
        store=AspStore(url=args.database_url),
        deposits=indexer,
        chain=chain if chain.entrypoint is not None else None,
    )


async def cmd_asp_status(args) -> int:
    chain = _chain(args)
    scope = await _scope(args, chain)
    async with IndexerClient(base_url=args.indexer) as indexer:
        asp = _asp_service(args, chain, scope, indexer)
        try:
            await asp.initialize()
            st = await asp.status()
        finally:
            await asp.close()
    flag = f"{C.OK}synced{C.RST}" if st.synced else f"{C.WARN}out of sync{C.RST}"
    print(f"{C.BOLD}ASP scope {scope}{C.RST} {flag}")
    print(f"  local root    : {st.local_root}")
    print(f"  on-chain root : {st.on_chain_root if st.on_chain_root is not None else '?'}")
    print(f"  labels={st.size} depth={st.depth} cursor={st.cursor_offset} last_block={st.last_block}")
    if st.error:
        print(f"{C.ERR}  chain error: {st.error}{C.RST}")
    return 0


async def cmd_asp_sync(args) -> int:
    chain = _chain(args)
    scope = await _scope(args, chain)
    async with IndexerClient(base_url=args.indexer) as indexer:
        asp = _asp_service(args, chain, scope, indexer)
        try:
            result = await (asp.rebuild_from_deposits() if args.rebuild else asp.process_new_deposits())
            print(f"{C.OK}+{len(result.new_labels)} label(s), size={result.size}, root={result.root}{C.RST}")
            if args.publish:
                if asp.chain is None or not asp.chain.can_publish:
                    print(f"{C.WARN}Publishing skipped: entrypoint or postman key not configured{C.RST}")
                else:
                    pub = await asp.update_on_chain_root()
                    if pub.updated:
                        print(f"{C.OK}Published root in {pub.tx_hash}{C.RST}")
                    else:
                        print(f"{C.DIM}On-chain root already current{C.RST}")
        finally:
            await asp.close()
    return 0


def cmd_format_proof(args) -> int:
    raw_proof = json.loads(Path(args.proof).read_text())
    signals = [int(s) for s in json.loads(Path(args.public).read_text())]
    if len(signals) < 2:
        print(f"{C.ERR}public.json must hold the circuit's public signals{C.RST}")
        return 1
    proof = WithdrawalProof(
        proof=Groth16Proof.from_dict(raw_proof),
        public_signals=signals,
        new_commitment_hash=signals[0],
        existing_nullifier_hash=signals[1],
    )
    out = format_proof_for_contract(proof)
    print(json.dumps({
        "pA": [str(x) for x in out["pA"]],
        "pB": [[str(x) for x in pair] for pair in out["pB"]],
        "pC": [str(x) for x in out["pC"]],
        "publicSignals": [str(x) for x in out["publicSignals"]],
        "encoded": encode_proof_as_bytes(proof),
    }, indent=2))
    return 0


# ---------- Main ----------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shielded pool client")
    parser.add_argument("--indexer", default=config.INDEXER_URL, help="Indexer base URL")
    parser.add_argument("--rpc-url", default=config.RPC_URL, help="EVM JSON-RPC URL")
    parser.add_argument("--pool", default=config.POOL_ADDRESS, help="Pool contract address")
    parser.add_argument("--entrypoint", default=config.ENTRYPOINT_ADDRESS, help="Entrypoint contract address")
    parser.add_argument("--scope", default=None, help="Pool scope (read from the pool when omitted)")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    def with_keys(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--master-nullifier", default=None)
        p.add_argument("--master-secret", default=None)
        p.add_argument("--window", type=int, default=50, help="Deposit indices to probe")
        p.add_argument("--json", action="store_true", help="Also print machine-readable output")
        return p

    with_keys(sub.add_parser("recover", help="Recover deposits owned by the master keys"))
    with_keys(sub.add_parser("history", help="Trace withdrawals and the current balance"))

    p = with_keys(sub.add_parser("prove", help="Prove a withdrawal from a lineage tip"))
    p.add_argument("--label", required=True, help="Deposit label of the lineage")
    p.add_argument("--amount", required=True, help="Withdrawn value in wei")
    p.add_argument("--processooor", required=True, help="Address allowed to process the withdrawal")
    p.add_argument("--data", default="0x", help="Withdrawal calldata (hex)")
    p.add_argument("--out", default=None, help="Write the formatted proof to this file")
    p.add_argument("--verify", action="store_true", help="Check the proof against the verification key")
    p.add_argument("--database-url", default=config.DATABASE_URL, help="Association set database")

    for name, help_text in (("asp-status", "Local vs on-chain ASP root"),
                            ("asp-sync", "Sync the association set from the indexer")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--database-url", default=config.DATABASE_URL)
        if name == "asp-sync":
            p.add_argument("--publish", action="store_true", help="Publish the root on-chain afterwards")
            p.add_argument("--rebuild", action="store_true", help="Rebuild from every deposit")

    p = sub.add_parser("format-proof", help="Format snarkjs output for the verifier")
    p.add_argument("proof", help="proof.json")
    p.add_argument("public", help="public.json")
    return parser


COMMANDS = {
    "recover": cmd_recover,
    "history": cmd_history,
    "prove": cmd_prove,
    "asp-status": cmd_asp_status,
    "asp-sync": cmd_asp_sync,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    if args.command == "format-proof":
        return cmd_format_proof(args)
    if not args.pool:
        print(f"{C.ERR}--pool (or POOL_ADDRESS) is required{C.RST}", file=sys.stderr)
        return 2
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        print(f"\n{C.WARN}Interrupted{C.RST}")
        return 130
    except Exception as e:
        print(f"{C.ERR}{args.command} failed: {e}{C.RST}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
