from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint


class _Base(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        from_attributes=True,
        extra="ignore",
    )


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


# =========================
# Association set
# =========================

class AspStatusRes(_Base):
    synced: bool = Field(..., description="Local root equals the on-chain ASP root.")
    local_root: str = Field(..., description="Root of the local association tree (decimal).")
    on_chain_root: Optional[str] = Field(None, description="Entrypoint latestRoot (decimal); null if unreadable.")
    size: conint(ge=0) = Field(..., description="Number of approved labels.")
    depth: conint(ge=0) = Field(..., description="Current tree depth.")
    state: str = Field(..., description="Synchronizer state: uninitialized/restoring/idle/syncing.")
    cursor_offset: conint(ge=0) = Field(..., description="Indexer deposits consumed so far.")
    last_block: conint(ge=0) = Field(..., description="Highest block among consumed deposits.")
    error: Optional[str] = Field(None, description="On-chain read error, if any.")


class AspSyncReq(_Base):
    publish: bool = Field(True, description="Publish the new root on-chain when it changed.")
    rebuild: bool = Field(False, description="Discard local state and rebuild from every deposit.")


class AspSyncRes(Ok):
    new_labels: List[str] = Field(default_factory=list, description="Labels appended by this run (decimal).")
    root: str = Field(..., description="Local root after the run (decimal).")
    size: conint(ge=0) = Field(..., description="Number of labels after the run.")
    cursor_offset: conint(ge=0) = Field(..., description="Cursor after the run.")
    published: bool = Field(False, description="Whether updateRoot was sent.")
    tx_hash: Optional[str] = Field(None, description="updateRoot transaction hash.")


class AspProofRes(Ok):
    root: str = Field(..., description="Association root the proof is against (decimal).")
    leaf: str = Field(..., description="The label (decimal).")
    index: conint(ge=0) = Field(..., description="Packed path bits (bit i set = right child at level i).")
    siblings: List[str] = Field(..., description="Siblings right-padded with zeros to 32 entries.")
    depth: conint(ge=0) = Field(..., description="Tree depth.")


# =========================
# Preflight
# =========================

class PreflightReq(_Base):
    pool_address: str = Field(..., description="Pool contract address.")
    deposit_label: str = Field(..., description="Label of the deposit to withdraw from (decimal or 0x-hex).")


class PreflightChecksModel(_Base):
    indexer_synced: bool
    asp_synced: bool
    state_tree_valid: bool
    label_exists: bool


class PreflightRes(_Base):
    can_proceed: bool = Field(..., description="True when a proof built now should be accepted.")
    checks: PreflightChecksModel
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    retry_after_ms: Optional[int] = Field(None, description="Suggested wait before retrying.")
    local_state_root: Optional[str] = None
    on_chain_state_root: Optional[str] = None


# =========================
# Proof formatting
# =========================

class Groth16ProofModel(_Base):
    pi_a: List[str] = Field(..., min_length=2, description="G1 point [x, y, (1)].")
    pi_b: List[List[str]] = Field(..., min_length=2, description="G2 point [[x0, x1], [y0, y1], ...].")
    pi_c: List[str] = Field(..., min_length=2, description="G1 point [x, y, (1)].")
    protocol: str = "groth16"
    curve: str = "bn128"


class FormatProofReq(_Base):
    proof: Groth16ProofModel
    public_signals: List[str] = Field(..., min_length=8, description="Circuit public signals (decimal).")


class FormatProofRes(Ok):
    pA: List[str]
    pB: List[List[str]]
    pC: List[str]
    public_signals: List[str]
    encoded: str = Field(..., description="pA, pB, pC as eight 32-byte words, 0x-hex.")
