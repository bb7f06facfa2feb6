# shielded_pool/crypto_core/field.py
"""
BN254 scalar field helpers and the Poseidon hash used for every commitment,
nullifier hash and tree node.

All protocol values are plain Python ints reduced modulo SNARK_SCALAR_FIELD.
"""
from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Union

import poseidon
from py_ecc.bn128 import curve_order

from shielded_pool import config

# Order of the BN254 G1 group, i.e. the circuit's native field
SNARK_SCALAR_FIELD: int = curve_order

POSEIDON_SECURITY_LEVEL = 128
POSEIDON_ALPHA = 5
MAX_POSEIDON_INPUTS = 4

FieldLike = Union[int, str, bytes]


class FieldError(ValueError):
    """Raised when a value is not a canonical field element."""


# ---------- Parsing ----------

def to_field(value: FieldLike, name: str = "value") -> int:
    """
    Parse an int, decimal string, 0x-hex string or big-endian bytes into a
    canonical field element.

    Raises:
        FieldError: on negative, oversized or unparsable input
    """
    if isinstance(value, bool):
        raise FieldError(f"{name} must be an integer, got bool")
    if isinstance(value, bytes):
        value = int.from_bytes(value, "big")
    elif isinstance(value, str):
        text = value.strip()
        try:
            value = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            raise FieldError(f"{name} is not a number: {value!r}") from None
    elif not isinstance(value, int):
        raise FieldError(f"{name} must be int/str/bytes, got {type(value).__name__}")

    if value < 0:
        raise FieldError(f"{name} must be non-negative")
    if value >= SNARK_SCALAR_FIELD:
        raise FieldError(f"{name} exceeds the scalar field modulus")
    return value


def to_hex32(value: int) -> str:
    """0x-prefixed, 64-nibble big-endian hex of a field element."""
    return "0x" + int(value).to_bytes(32, "big").hex()


# ---------- Hashing ----------

class FieldHasher:
    """
    Poseidon over the BN254 scalar field (x^5 S-box, 128-bit security).

    One permutation instance is built per arity and reused; building one
    derives round constants, which is far slower than hashing.

    ``params`` optionally maps arity -> {"mds": [[...]], "round_constants": [...],
    "full_rounds": int, "partial_rounds": int} so a deployment can pin the
    exact constants its circuit was compiled with.
    """

    def __init__(self, params: Optional[Dict[int, Dict[str, Any]]] = None):
        self._params = {int(k): v for k, v in (params or {}).items()}
        self._instances: Dict[int, poseidon.Poseidon] = {}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "FieldHasher":
        data = json.loads(Path(path).read_text())
        return cls(params=data)

    def _instance(self, arity: int) -> poseidon.Poseidon:
        inst = self._instances.get(arity)
        if inst is None:
            p = self._params.get(arity, {})
            inst = poseidon.Poseidon(
                SNARK_SCALAR_FIELD,
                POSEIDON_SECURITY_LEVEL,
                POSEIDON_ALPHA,
                arity,
                arity + 1,
                full_round=p.get("full_rounds"),
                partial_round=p.get("partial_rounds"),
                mds_matrix=p.get("mds"),
                rc_list=p.get("round_constants"),
            )
            self._instances[arity] = inst
        return inst

    def hash(self, *inputs: int) -> int:
        if not 1 <= len(inputs) <= MAX_POSEIDON_INPUTS:
            raise FieldError(f"Poseidon takes 1..{MAX_POSEIDON_INPUTS} inputs, got {len(inputs)}")
        elems = [int(x) % SNARK_SCALAR_FIELD for x in inputs]
        # capacity element first, as circomlib lays out the sponge state
        out = self._instance(len(elems)).run_hash([0] + elems)
        return int(out) % SNARK_SCALAR_FIELD

    def hash2(self, left: int, right: int) -> int:
        return self.hash(left, right)


_default_hasher: Optional[FieldHasher] = None


def get_hasher() -> FieldHasher:
    """Process-wide hasher; loads POSEIDON_PARAMS_PATH on first use if set."""
    global _default_hasher
    if _default_hasher is None:
        if config.POSEIDON_PARAMS_PATH:
            _default_hasher = FieldHasher.from_file(config.POSEIDON_PARAMS_PATH)
        else:
            _default_hasher = FieldHasher()
    return _default_hasher


def set_hasher(hasher: Optional[FieldHasher]) -> None:
    """Replace the process-wide hasher (None resets to the lazy default)."""
    global _default_hasher
    _default_hasher = hasher
    _poseidon_cached.cache_clear()


@lru_cache(maxsize=65536)
def _poseidon_cached(inputs: tuple) -> int:
    return get_hasher().hash(*inputs)


def poseidon_hash(*inputs: int) -> int:
    """Poseidon of 1..4 field elements with the process-wide hasher."""
    return _poseidon_cached(tuple(int(x) for x in inputs))
