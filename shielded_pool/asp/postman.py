# shielded_pool/asp/postman.py
"""
On-chain access for the association set and the state tree.

Reads the Entrypoint's latest ASP root and the Pool's current state root,
and publishes new ASP roots with the postman key (updateRoot is restricted to
that role on-chain). web3 calls are blocking, so the async methods run them in
a worker thread.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from web3 import Web3

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger

logger = get_logger("asp.postman")

ENTRYPOINT_ABI = [
    {
        "name": "updateRoot",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_root", "type": "uint256"},
            {"name": "_ipfsCID", "type": "string"},
        ],
        "outputs": [{"name": "_index", "type": "uint256"}],
    },
    {
        "name": "latestRoot",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "_root", "type": "uint256"}],
    },
]

POOL_ABI = [
    {
        "name": "currentRoot",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "_root", "type": "uint256"}],
    },
    {
        "name": "SCOPE",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "_scope", "type": "uint256"}],
    },
]

RECEIPT_TIMEOUT = 120


class PostmanError(RuntimeError):
    pass


class EntrypointClient:
    def __init__(
        self,
        rpc_url: str = config.RPC_URL,
        entrypoint_address: str = config.ENTRYPOINT_ADDRESS,
        pool_address: str = config.POOL_ADDRESS,
        private_key: str = config.ASP_POSTMAN_PRIVATE_KEY,
        chain_id: int = config.CHAIN_ID,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.chain_id = chain_id
        self._private_key = private_key
        self.entrypoint = (
            self.w3.eth.contract(address=Web3.to_checksum_address(entrypoint_address), abi=ENTRYPOINT_ABI)
            if entrypoint_address else None
        )
        self.pool = (
            self.w3.eth.contract(address=Web3.to_checksum_address(pool_address), abi=POOL_ABI)
            if pool_address else None
        )

    @property
    def can_publish(self) -> bool:
        return self.entrypoint is not None and bool(self._private_key)

    def _require_entrypoint(self):
        if self.entrypoint is None:
            raise PostmanError("ENTRYPOINT_ADDRESS not configured")
        return self.entrypoint

    def _require_pool(self):
        if self.pool is None:
            raise PostmanError("POOL_ADDRESS not configured")
        return self.pool

    # ---------- Reads ----------

    async def latest_root(self) -> int:
        fn = self._require_entrypoint().functions.latestRoot()
        return int(await asyncio.to_thread(fn.call))

    async def pool_state_root(self) -> int:
        fn = self._require_pool().functions.currentRoot()
        return int(await asyncio.to_thread(fn.call))

    async def pool_scope(self) -> int:
        fn = self._require_pool().functions.SCOPE()
        return int(await asyncio.to_thread(fn.call))

    async def block_number(self) -> int:
        return int(await asyncio.to_thread(lambda: self.w3.eth.block_number))

    # ---------- Writes ----------

    def _send_update_root(self, root: int, ipfs_cid: str) -> str:
        entrypoint = self._require_entrypoint()
        if not self._private_key:
            raise PostmanError("ASP_POSTMAN_PRIVATE_KEY not configured")

        account = self.w3.eth.account.from_key(self._private_key)
        tx = entrypoint.functions.updateRoot(root, ipfs_cid).build_transaction({
            "from": account.address,
            "chainId": self.chain_id,
            "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
        })
        signed = self.w3.eth.account.sign_transaction(tx, self._private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        if receipt["status"] != 1:
            raise PostmanError(f"updateRoot reverted in tx {tx_hash.hex()}")
        return Web3.to_hex(tx_hash)

    async def update_root(self, root: int, ipfs_cid: str = config.ASP_CONTENT_CID) -> str:
        """
        Publish a new ASP root. Returns the transaction hash once mined.

        Raises:
            PostmanError: not configured, or the transaction reverted
        """
        logger.info(f"Publishing ASP root {root}")
        try:
            return await asyncio.to_thread(self._send_update_root, root, ipfs_cid)
        except PostmanError:
            raise
        except Exception as e:
            logger.error(f"updateRoot failed: {e}", exc_info=True)
            raise PostmanError(f"updateRoot failed: {e}") from e
