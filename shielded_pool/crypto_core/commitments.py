# shielded_pool/crypto_core/commitments.py
"""
Deterministic secret derivation and the commitment scheme.

    deposit secrets  : nullifier = H(masterNullifier, scope, index)
                       secret    = H(masterSecret,    scope, index)
    lineage secrets  : nullifier = H(masterNullifier, label, childIndex)
                       secret    = H(masterSecret,    label, childIndex)
    precommitment    = H(nullifier, secret)
    commitment       = H(value, label, precommitment)
    nullifierHash    = H(nullifier)

Master keys are produced elsewhere (wallet signature derivation) and are never
persisted by this package.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from shielded_pool.crypto_core.field import (
    SNARK_SCALAR_FIELD,
    FieldLike,
    poseidon_hash,
    to_field,
    to_hex32,
)


# ---------- Types ----------

@dataclass(frozen=True)
class MasterKeys:
    master_nullifier: int
    master_secret: int

    def __post_init__(self):
        to_field(self.master_nullifier, "master_nullifier")
        to_field(self.master_secret, "master_secret")
        if self.master_nullifier == 0 or self.master_secret == 0:
            raise ValueError("master keys must be non-zero")

    @classmethod
    def from_values(cls, master_nullifier: FieldLike, master_secret: FieldLike) -> "MasterKeys":
        return cls(
            master_nullifier=to_field(master_nullifier, "master_nullifier"),
            master_secret=to_field(master_secret, "master_secret"),
        )

    def __repr__(self) -> str:
        # keep key material out of logs and tracebacks
        return "MasterKeys(<redacted>)"


@dataclass(frozen=True)
class DepositSecrets:
    nullifier: int
    secret: int
    label: Optional[int] = None
    child_index: int = 0

    @property
    def precommitment(self) -> int:
        return compute_precommitment(self.nullifier, self.secret)

    @property
    def nullifier_hash(self) -> int:
        return compute_nullifier_hash(self.nullifier)

    def __repr__(self) -> str:
        return f"DepositSecrets(label={self.label}, child_index={self.child_index})"


@dataclass(frozen=True)
class Commitment:
    """A fully opened commitment: the preimage plus its derived hashes."""
    value: int
    label: int
    nullifier: int
    secret: int
    precommitment: int
    hash: int
    nullifier_hash: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": str(self.value),
            "label": str(self.label),
            "precommitment": to_hex32(self.precommitment),
            "hash": to_hex32(self.hash),
            "nullifierHash": to_hex32(self.nullifier_hash),
        }


# ---------- Hashes ----------

def compute_precommitment(nullifier: int, secret: int) -> int:
    return poseidon_hash(nullifier, secret)


def compute_commitment_hash(value: int, label: int, precommitment: int) -> int:
    return poseidon_hash(value, label, precommitment)


def compute_nullifier_hash(nullifier: int) -> int:
    return poseidon_hash(nullifier)


def build_commitment(value: int, label: int, nullifier: int, secret: int) -> Commitment:
    value = to_field(value, "value")
    label = to_field(label, "label")
    pre = compute_precommitment(nullifier, secret)
    return Commitment(
        value=value,
        label=label,
        nullifier=nullifier,
        secret=secret,
        precommitment=pre,
        hash=compute_commitment_hash(value, label, pre),
        nullifier_hash=compute_nullifier_hash(nullifier),
    )


# ---------- Derivation ----------

def derive_deposit_secrets(keys: MasterKeys, scope: FieldLike, index: int) -> DepositSecrets:
    """
    Secrets for the ``index``-th original deposit a user makes into a pool.

    Raises:
        ValueError: on negative index or invalid scope
    """
    scope = to_field(scope, "scope")
    if index < 0:
        raise ValueError("index must be non-negative")
    return DepositSecrets(
        nullifier=poseidon_hash(keys.master_nullifier, scope, index),
        secret=poseidon_hash(keys.master_secret, scope, index),
        child_index=0,
    )


def derive_lineage_secrets(keys: MasterKeys, label: FieldLike, child_index: int) -> DepositSecrets:
    """
    Secrets for the commitment created at step ``child_index`` of a deposit's
    lineage (change of a partial withdrawal, or a merge result).

    Raises:
        ValueError: when child_index < 1
    """
    label = to_field(label, "label")
    if child_index < 1:
        raise ValueError("child_index must be >= 1; index 0 is the original deposit")
    return DepositSecrets(
        nullifier=poseidon_hash(keys.master_nullifier, label, child_index),
        secret=poseidon_hash(keys.master_secret, label, child_index),
        label=label,
        child_index=child_index,
    )


# ---------- Withdrawal context ----------

def compute_withdrawal_context(processooor: str, data: bytes, scope: FieldLike) -> int:
    """
    keccak256(abi.encode(Withdrawal{processooor, data}, scope)) mod p

    Binds a proof to the contract that will process it and to its calldata,
    so a relayer cannot re-target the withdrawal.
    """
    scope = to_field(scope, "scope")
    if isinstance(data, str):
        data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    encoded = abi_encode(
        ["(address,bytes)", "uint256"],
        [(to_checksum_address(processooor), data), scope],
    )
    return int.from_bytes(keccak(encoded), "big") % SNARK_SCALAR_FIELD
