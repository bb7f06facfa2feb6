# shielded_pool/config.py
from __future__ import annotations

import os
import pathlib

# =========================
# Paths
# =========================

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
DATA_DIR = os.getenv("DATA_DIR", str(REPO_ROOT / "data"))

# =========================
# Storage
# =========================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(DATA_DIR, 'shielded_pool.db')}",
)
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "0") == "1"

# =========================
# Network
# =========================

INDEXER_URL = os.getenv("INDEXER_URL", "http://127.0.0.1:42069")
INDEXER_TIMEOUT = float(os.getenv("INDEXER_TIMEOUT", "10"))
RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
CHAIN_ID = int(os.getenv("CHAIN_ID", "31337"))

POOL_ADDRESS = os.getenv("POOL_ADDRESS", "")
# Pool scope (decimal or 0x); read from the pool contract when empty
POOL_SCOPE = os.getenv("POOL_SCOPE", "")
ENTRYPOINT_ADDRESS = os.getenv("ENTRYPOINT_ADDRESS", "")

# Postman key signs updateRoot; relayer key is accepted as a fallback
ASP_POSTMAN_PRIVATE_KEY = os.getenv("ASP_POSTMAN_PRIVATE_KEY") or os.getenv("RELAYER_PRIVATE_KEY", "")

# =========================
# Association set
# =========================

ASP_CONTENT_CID = os.getenv(
    "ASP_CONTENT_CID",
    "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
)
ASP_SYNC_INTERVAL = float(os.getenv("ASP_SYNC_INTERVAL", "30"))
ASP_PAGE_SIZE = int(os.getenv("ASP_PAGE_SIZE", "1000"))
ASP_AUTO_PUBLISH = os.getenv("ASP_AUTO_PUBLISH", "1") == "1"

# =========================
# Prover
# =========================

CIRCUITS_DIR = os.getenv("CIRCUITS_DIR", str(REPO_ROOT / "circuits"))
CIRCUIT_VERSION = os.getenv("CIRCUIT_VERSION", "withdraw-v1")
SNARKJS_BIN = os.getenv("SNARKJS_BIN", "snarkjs")
PROVER_TIMEOUT = int(os.getenv("PROVER_TIMEOUT", "300"))
PROVER_MAX_RETRIES = int(os.getenv("PROVER_MAX_RETRIES", "1"))
PROVER_WORKERS = int(os.getenv("PROVER_WORKERS", "1"))

# Optional JSON file with circuit-matching Poseidon constants
POSEIDON_PARAMS_PATH = os.getenv("POSEIDON_PARAMS_PATH", "")

# =========================
# Logging
# =========================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")
