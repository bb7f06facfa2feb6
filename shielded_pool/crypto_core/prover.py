# shielded_pool/crypto_core/prover.py
"""
Withdrawal / merge-deposit proof pipeline.

    build_withdrawal_input  -> gather secrets and both tree paths
    generate_withdrawal_proof -> run the Groth16 backend, check its outputs
    format_proof_for_contract / encode_proof_as_bytes -> verifier calldata

Public signals produced by the circuit, in order:

    [newCommitmentHash, existingNullifierHash, withdrawnValue, stateRoot,
     stateTreeDepth, ASPRoot, ASPTreeDepth, context]

(the merge-deposit circuit uses the same layout with depositValue in slot 2).
"""
from __future__ import annotations

import json
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger
from shielded_pool.api.subprocess_retry import SubprocessRetryError, run_with_retry
from shielded_pool.crypto_core.commitments import (
    MasterKeys,
    compute_commitment_hash,
    compute_nullifier_hash,
    compute_precommitment,
    derive_lineage_secrets,
)
from shielded_pool.crypto_core.field import to_field
from shielded_pool.crypto_core.merkle import MAX_TREE_DEPTH, IncrementalTree
from shielded_pool.crypto_core.recovery import RecoveredDeposit
from shielded_pool.crypto_core.tracer import SpendInfo, SpendLookup, Unspent

logger = get_logger("prover")

STATE_RESYNC_RETRY_MS = 15000

STAGE_IDLE = "idle"
STAGE_LOADING = "loading"
STAGE_COMPUTING = "computing"
STAGE_DONE = "done"
STAGE_ERROR = "error"


# =========================
# Errors
# =========================

class ProofError(Exception):
    """Base class for proof pipeline failures."""


class StaleDepositError(ProofError):
    """The commitment was already spent; only the lineage tip can be proven."""


class LabelNotApprovedError(ProofError):
    """The deposit label is not in the association set."""


class StateDesynchronizedError(ProofError):
    """Local state or association tree disagrees with the on-chain root."""

    def __init__(self, message: str, retry_after_ms: int = STATE_RESYNC_RETRY_MS):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class ProofVerificationError(ProofError):
    """Backend outputs do not match the locally recomputed values."""


class CircuitVersionError(ProofError):
    pass


# =========================
# Types
# =========================

@dataclass(frozen=True)
class CircuitArtifacts:
    wasm_path: str
    zkey_path: str
    vkey_path: Optional[str] = None
    version: str = config.CIRCUIT_VERSION

    def check(self, expected_version: Optional[str] = None) -> None:
        """
        Raises:
            CircuitVersionError: version tag mismatch
            ProofError: missing artifact files
        """
        expected = expected_version or config.CIRCUIT_VERSION
        if self.version != expected:
            raise CircuitVersionError(
                f"circuit artifacts are {self.version!r}, prover expects {expected!r}"
            )
        for p in (self.wasm_path, self.zkey_path):
            if not Path(p).is_file():
                raise ProofError(f"circuit artifact not found: {p}")


def artifacts_in(directory: str, name: str, version: str = config.CIRCUIT_VERSION) -> CircuitArtifacts:
    base = Path(directory)
    return CircuitArtifacts(
        wasm_path=str(base / f"{name}.wasm"),
        zkey_path=str(base / f"{name}_final.zkey"),
        vkey_path=str(base / f"{name}_verification_key.json"),
        version=version,
    )


DEFAULT_WITHDRAW_ARTIFACTS = artifacts_in(config.CIRCUITS_DIR, "withdraw")
DEFAULT_MERGE_DEPOSIT_ARTIFACTS = artifacts_in(config.CIRCUITS_DIR, "mergeDeposit")


@dataclass
class ProverStatus:
    stage: str = STAGE_IDLE
    message: str = ""
    progress: Optional[int] = None
    proof: Optional["WithdrawalProof"] = None
    error: Optional[str] = None


ProgressCallback = Callable[[ProverStatus], None]


@dataclass
class WithdrawalProofInput:
    # public
    withdrawn_value: int
    state_root: int
    state_tree_depth: int
    asp_root: int
    asp_tree_depth: int
    context: int
    # private
    label: int
    existing_value: int
    existing_nullifier: int
    existing_secret: int
    new_nullifier: int
    new_secret: int
    state_siblings: List[int] = field(default_factory=list)
    state_index: int = 0
    asp_siblings: List[int] = field(default_factory=list)
    asp_index: int = 0

    value_field = "withdrawnValue"

    @property
    def amount(self) -> int:
        return self.withdrawn_value

    @property
    def new_value(self) -> int:
        return self.existing_value - self.withdrawn_value

    def to_circuit_inputs(self) -> Dict[str, Any]:
        return {
            self.value_field: str(self.amount),
            "stateRoot": str(self.state_root),
            "stateTreeDepth": str(self.state_tree_depth),
            "ASPRoot": str(self.asp_root),
            "ASPTreeDepth": str(self.asp_tree_depth),
            "context": str(self.context),
            "label": str(self.label),
            "existingValue": str(self.existing_value),
            "existingNullifier": str(self.existing_nullifier),
            "existingSecret": str(self.existing_secret),
            "newNullifier": str(self.new_nullifier),
            "newSecret": str(self.new_secret),
            "stateSiblings": [str(s) for s in pad_siblings(self.state_siblings)],
            "stateIndex": str(self.state_index),
            "ASPSiblings": [str(s) for s in pad_siblings(self.asp_siblings)],
            "ASPIndex": str(self.asp_index),
        }


@dataclass
class MergeDepositProofInput(WithdrawalProofInput):
    """Same witness as a withdrawal; the new commitment holds existing + deposit."""

    value_field = "depositValue"

    @property
    def deposit_value(self) -> int:
        return self.withdrawn_value

    @property
    def new_value(self) -> int:
        return self.existing_value + self.withdrawn_value


@dataclass(frozen=True)
class Groth16Proof:
    pi_a: Tuple[int, ...]
    pi_b: Tuple[Tuple[int, ...], ...]
    pi_c: Tuple[int, ...]
    protocol: str = "groth16"
    curve: str = "bn128"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Groth16Proof":
        try:
            return cls(
                pi_a=tuple(int(x) for x in d["pi_a"]),
                pi_b=tuple(tuple(int(x) for x in pair) for pair in d["pi_b"]),
                pi_c=tuple(int(x) for x in d["pi_c"]),
                protocol=d.get("protocol", "groth16"),
                curve=d.get("curve", "bn128"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProofError(f"malformed proof object: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pi_a": [str(x) for x in self.pi_a],
            "pi_b": [[str(x) for x in pair] for pair in self.pi_b],
            "pi_c": [str(x) for x in self.pi_c],
            "protocol": self.protocol,
            "curve": self.curve,
        }


@dataclass(frozen=True)
class WithdrawalProof:
    proof: Groth16Proof
    public_signals: List[int]
    new_commitment_hash: int
    existing_nullifier_hash: int


# =========================
# Input assembly
# =========================

def pad_siblings(siblings: Sequence[int], max_depth: int = MAX_TREE_DEPTH) -> List[int]:
    if len(siblings) > max_depth:
        raise ProofError(f"{len(siblings)} siblings exceed max depth {max_depth}")
    return [int(s) for s in siblings] + [0] * (max_depth - len(siblings))


def check_state_sync(state_tree: IncrementalTree, authoritative_root: Optional[int]) -> None:
    """
    The witness is built from the newest local root, so the on-chain root
    must equal it exactly. An on-chain root found only in the local history
    means the indexer is ahead of the chain and still blocks.

    Raises:
        StateDesynchronizedError: with a retry hint for the caller
    """
    if authoritative_root is None or state_tree.root == authoritative_root:
        return
    raise StateDesynchronizedError(
        f"local state root {state_tree.root} does not match on-chain root {authoritative_root}; "
        f"the indexer and chain are out of step, retry shortly"
    )


def check_asp_sync(asp_tree: IncrementalTree, authoritative_root: Optional[int]) -> None:
    """
    The association root proven against must be the Entrypoint's latest root.

    Raises:
        StateDesynchronizedError: local association set differs from the published one
    """
    if authoritative_root is None or asp_tree.root == authoritative_root:
        return
    raise StateDesynchronizedError(
        f"local ASP root {asp_tree.root} does not match published root {authoritative_root}; "
        f"wait for the next ASP update, retry shortly"
    )


def ensure_tip(info: SpendInfo) -> None:
    if not isinstance(info, Unspent):
        raise StaleDepositError("commitment already spent; trace the lineage to its current tip")


async def validate_tip(deposit: RecoveredDeposit, lookup: SpendLookup) -> None:
    """Ask the spend oracle whether ``deposit`` is still the unspent tip."""
    ensure_tip(await lookup(deposit.nullifier_hash))


def _assemble(
    input_cls,
    deposit: RecoveredDeposit,
    keys: MasterKeys,
    amount: int,
    state_tree: IncrementalTree,
    asp_tree: IncrementalTree,
    context: int,
    authoritative_state_root: Optional[int],
    authoritative_asp_root: Optional[int],
):
    check_state_sync(state_tree, authoritative_state_root)
    check_asp_sync(asp_tree, authoritative_asp_root)

    commitment = deposit.commitment_hash
    if not state_tree.has(commitment):
        raise StateDesynchronizedError(
            "commitment not present in local state tree; the indexer is behind, retry shortly"
        )
    if not asp_tree.has(deposit.label):
        raise LabelNotApprovedError(f"label {deposit.label} is not in the association set")

    state_proof = state_tree.proof_for_leaf(commitment)
    asp_proof = asp_tree.proof_for_leaf(deposit.label)
    new = derive_lineage_secrets(keys, deposit.label, deposit.child_index + 1)

    return input_cls(
        withdrawn_value=amount,
        state_root=state_proof.root,
        state_tree_depth=state_proof.depth,
        asp_root=asp_proof.root,
        asp_tree_depth=asp_proof.depth,
        context=to_field(context, "context"),
        label=deposit.label,
        existing_value=deposit.value,
        existing_nullifier=deposit.nullifier,
        existing_secret=deposit.secret,
        new_nullifier=new.nullifier,
        new_secret=new.secret,
        state_siblings=state_proof.siblings,
        state_index=state_proof.index,
        asp_siblings=asp_proof.siblings,
        asp_index=asp_proof.index,
    )


def build_withdrawal_input(
    deposit: RecoveredDeposit,
    keys: MasterKeys,
    withdrawn_value: int,
    state_tree: IncrementalTree,
    asp_tree: IncrementalTree,
    context: int,
    authoritative_state_root: Optional[int] = None,
    authoritative_asp_root: Optional[int] = None,
) -> WithdrawalProofInput:
    """
    Assemble the withdrawal witness. The change commitment (possibly zero
    value) uses the lineage secrets at child_index + 1.

    Raises:
        ValueError: withdrawn_value outside (0, deposit.value]
        StateDesynchronizedError: local state or ASP tree out of step with the chain
        LabelNotApprovedError: label missing from the association set
    """
    if not 0 < withdrawn_value <= deposit.value:
        raise ValueError(f"withdrawn value must be in (0, {deposit.value}], got {withdrawn_value}")
    return _assemble(
        WithdrawalProofInput, deposit, keys, withdrawn_value,
        state_tree, asp_tree, context, authoritative_state_root, authoritative_asp_root,
    )


def build_merge_deposit_input(
    deposit: RecoveredDeposit,
    keys: MasterKeys,
    deposit_value: int,
    state_tree: IncrementalTree,
    asp_tree: IncrementalTree,
    context: int,
    authoritative_state_root: Optional[int] = None,
    authoritative_asp_root: Optional[int] = None,
) -> MergeDepositProofInput:
    if deposit_value <= 0:
        raise ValueError("deposit value must be positive")
    return _assemble(
        MergeDepositProofInput, deposit, keys, deposit_value,
        state_tree, asp_tree, context, authoritative_state_root, authoritative_asp_root,
    )


# =========================
# Backends
# =========================

class ProvingBackend(Protocol):
    def full_prove(self, inputs: Dict[str, Any], artifacts: CircuitArtifacts) -> Tuple[Dict[str, Any], List[str]]:
        ...

    def verify(self, vkey_path: str, public_signals: List[int], proof: Groth16Proof) -> bool:
        ...


class SnarkjsBackend:
    """Runs the snarkjs CLI (`snarkjs groth16 fullprove`) in a scratch directory."""

    def __init__(
        self,
        snarkjs_bin: str = config.SNARKJS_BIN,
        timeout: int = config.PROVER_TIMEOUT,
        max_retries: int = config.PROVER_MAX_RETRIES,
    ):
        self.cmd = shlex.split(snarkjs_bin)
        self.timeout = timeout
        self.max_retries = max_retries

    def full_prove(self, inputs: Dict[str, Any], artifacts: CircuitArtifacts) -> Tuple[Dict[str, Any], List[str]]:
        with tempfile.TemporaryDirectory(prefix="groth16_") as tmp:
            tmp_path = Path(tmp)
            input_file = tmp_path / "input.json"
            proof_file = tmp_path / "proof.json"
            public_file = tmp_path / "public.json"
            input_file.write_text(json.dumps(inputs))

            try:
                run_with_retry(
                    self.cmd + [
                        "groth16", "fullprove",
                        str(input_file), artifacts.wasm_path, artifacts.zkey_path,
                        str(proof_file), str(public_file),
                    ],
                    max_retries=self.max_retries,
                    timeout=self.timeout,
                    cwd=tmp_path,
                    description="Groth16 fullprove",
                )
            except SubprocessRetryError as e:
                raise ProofError(str(e)) from e

            return json.loads(proof_file.read_text()), json.loads(public_file.read_text())

    def verify(self, vkey_path: str, public_signals: List[int], proof: Groth16Proof) -> bool:
        with tempfile.TemporaryDirectory(prefix="groth16_verify_") as tmp:
            tmp_path = Path(tmp)
            (tmp_path / "public.json").write_text(json.dumps([str(s) for s in public_signals]))
            (tmp_path / "proof.json").write_text(json.dumps(proof.to_dict()))
            try:
                result = run_with_retry(
                    self.cmd + [
                        "groth16", "verify", vkey_path,
                        str(tmp_path / "public.json"), str(tmp_path / "proof.json"),
                    ],
                    max_retries=1,
                    timeout=self.timeout,
                    description="Groth16 verify",
                )
            except SubprocessRetryError as e:
                logger.warning(f"Local verification failed: {e}")
                return False
            return "OK" in result.stdout


# =========================
# Proving
# =========================

def _emit(on_progress: Optional[ProgressCallback], status: ProverStatus) -> None:
    if on_progress:
        on_progress(status)


def _prove(
    inp: WithdrawalProofInput,
    artifacts: CircuitArtifacts,
    backend: ProvingBackend,
    on_progress: Optional[ProgressCallback],
    kind: str,
) -> WithdrawalProof:
    _emit(on_progress, ProverStatus(STAGE_LOADING, f"Loading {kind} circuit artifacts..."))
    try:
        artifacts.check()
        circuit_inputs = inp.to_circuit_inputs()

        _emit(on_progress, ProverStatus(STAGE_COMPUTING, f"Computing {kind} proof...", 10))
        raw_proof, raw_signals = backend.full_prove(circuit_inputs, artifacts)

        _emit(on_progress, ProverStatus(STAGE_COMPUTING, "Computing commitments...", 90))
        existing_nullifier_hash = compute_nullifier_hash(inp.existing_nullifier)
        new_commitment_hash = compute_commitment_hash(
            inp.new_value, inp.label, compute_precommitment(inp.new_nullifier, inp.new_secret)
        )

        public_signals = [int(s) for s in raw_signals]
        if len(public_signals) < 2:
            raise ProofVerificationError(f"backend returned {len(public_signals)} public signals")
        if public_signals[0] != new_commitment_hash:
            raise ProofVerificationError("new commitment hash does not match circuit output")
        if public_signals[1] != existing_nullifier_hash:
            raise ProofVerificationError("existing nullifier hash does not match circuit output")

        result = WithdrawalProof(
            proof=Groth16Proof.from_dict(raw_proof),
            public_signals=public_signals,
            new_commitment_hash=new_commitment_hash,
            existing_nullifier_hash=existing_nullifier_hash,
        )
    except Exception as e:
        logger.error(f"{kind.capitalize()} proof generation failed: {e}")
        _emit(on_progress, ProverStatus(STAGE_ERROR, error=str(e)))
        if isinstance(e, ProofError):
            raise
        raise ProofError(f"{kind.capitalize()} proof generation failed: {e}") from e

    _emit(on_progress, ProverStatus(STAGE_DONE, "Proof ready", 100, proof=result))
    return result


def generate_withdrawal_proof(
    inp: WithdrawalProofInput,
    artifacts: CircuitArtifacts = DEFAULT_WITHDRAW_ARTIFACTS,
    backend: Optional[ProvingBackend] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> WithdrawalProof:
    """
    Run the prover and check that the circuit's nullifier hash and new
    commitment equal the locally recomputed ones. Blocking; callers that
    must stay responsive go through ProverClient.

    Raises:
        ProofError: any failure, after an ``error`` status was emitted
    """
    return _prove(inp, artifacts, backend or SnarkjsBackend(), on_progress, "withdrawal")


def generate_merge_deposit_proof(
    inp: MergeDepositProofInput,
    artifacts: CircuitArtifacts = DEFAULT_MERGE_DEPOSIT_ARTIFACTS,
    backend: Optional[ProvingBackend] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> WithdrawalProof:
    return _prove(inp, artifacts, backend or SnarkjsBackend(), on_progress, "merge deposit")


def verify_proof_locally(
    proof: WithdrawalProof,
    vkey_path: Optional[str] = None,
    backend: Optional[ProvingBackend] = None,
) -> bool:
    vkey = vkey_path or DEFAULT_WITHDRAW_ARTIFACTS.vkey_path
    return (backend or SnarkjsBackend()).verify(vkey, proof.public_signals, proof.proof)


# =========================
# Formatting
# =========================

def format_proof_for_contract(proof: WithdrawalProof) -> Dict[str, Any]:
    """
    Verifier argument layout. snarkjs emits G2 coordinates as (c0, c1) while
    the Solidity verifier expects (c1, c0), hence the swap inside pB.
    """
    p = proof.proof
    return {
        "pA": [p.pi_a[0], p.pi_a[1]],
        "pB": [
            [p.pi_b[0][1], p.pi_b[0][0]],
            [p.pi_b[1][1], p.pi_b[1][0]],
        ],
        "pC": [p.pi_c[0], p.pi_c[1]],
        "publicSignals": list(proof.public_signals),
    }


def encode_proof_as_bytes(proof: WithdrawalProof) -> str:
    """pA, pB, pC flattened to eight 32-byte big-endian words, 0x-prefixed."""
    f = format_proof_for_contract(proof)
    words = [
        f["pA"][0], f["pA"][1],
        f["pB"][0][0], f["pB"][0][1],
        f["pB"][1][0], f["pB"][1][1],
        f["pC"][0], f["pC"][1],
    ]
    return "0x" + "".join(int(w).to_bytes(32, "big").hex() for w in words)
