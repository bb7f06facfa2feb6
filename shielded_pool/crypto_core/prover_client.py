# shielded_pool/crypto_core/prover_client.py
"""
Non-blocking front end for the prover.

Proving runs on a worker pool; callers get a ProofTask carrying a future, the
latest ProverStatus and a cancel token. Cancellation is cooperative: the
backend run is not interrupted, but after ``cancel()`` no further status is
delivered and the result is discarded.
"""
from __future__ import annotations

import asyncio
import itertools
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger
from shielded_pool.crypto_core.prover import (
    DEFAULT_MERGE_DEPOSIT_ARTIFACTS,
    DEFAULT_WITHDRAW_ARTIFACTS,
    STAGE_IDLE,
    CircuitArtifacts,
    MergeDepositProofInput,
    ProgressCallback,
    ProofError,
    ProverStatus,
    ProvingBackend,
    SnarkjsBackend,
    WithdrawalProof,
    WithdrawalProofInput,
    generate_merge_deposit_proof,
    generate_withdrawal_proof,
)

logger = get_logger("prover.client")

_task_ids = itertools.count(1)


class ProverCancelledError(ProofError):
    pass


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ProverCancelledError("proof generation cancelled")


class ProofTask:
    """Handle to one submitted proof."""

    def __init__(self, kind: str, on_progress: Optional[ProgressCallback] = None):
        self.id = next(_task_ids)
        self.kind = kind
        self.token = CancelToken()
        self.future: Optional[Future] = None
        self._status = ProverStatus(STAGE_IDLE)
        self._on_progress = on_progress
        self._history: List[ProverStatus] = [self._status]
        self._lock = threading.Lock()
        self._resubmit: Optional[Callable[[], "ProofTask"]] = None

    @property
    def status(self) -> ProverStatus:
        with self._lock:
            return self._status

    @property
    def history(self) -> List[ProverStatus]:
        with self._lock:
            return list(self._history)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def _publish(self, status: ProverStatus) -> None:
        if self.token.cancelled:
            return
        with self._lock:
            self._status = status
            self._history.append(status)
        if self._on_progress:
            try:
                self._on_progress(status)
            except Exception as e:
                logger.warning(f"Progress callback for task {self.id} raised: {e}")

    def cancel(self) -> None:
        self.token.cancel()
        if self.future is not None:
            # only succeeds if the job has not started yet
            self.future.cancel()
        logger.info(f"Proof task {self.id} cancelled")

    def result(self, timeout: Optional[float] = None) -> WithdrawalProof:
        """
        Block for the proof.

        Raises:
            ProverCancelledError: the task was cancelled
            ProofError: the backend or output validation failed
        """
        self.token.raise_if_cancelled()
        value = self.future.result(timeout=timeout)
        self.token.raise_if_cancelled()
        return value

    async def wait(self) -> WithdrawalProof:
        self.token.raise_if_cancelled()
        value = await asyncio.wrap_future(self.future)
        self.token.raise_if_cancelled()
        return value

    def retry(self) -> "ProofTask":
        """Resubmit the same input as a fresh task."""
        if self._resubmit is None:
            raise ProofError("task cannot be retried")
        return self._resubmit()

    def done(self) -> bool:
        return self.future is not None and self.future.done()


class ProverClient:
    def __init__(
        self,
        backend: Optional[ProvingBackend] = None,
        max_workers: int = config.PROVER_WORKERS,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.backend = backend or SnarkjsBackend()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="prover"
        )

    def _run(self, task: ProofTask, fn, inp, artifacts) -> WithdrawalProof:
        task.token.raise_if_cancelled()
        proof = fn(inp, artifacts, self.backend, task._publish)
        task.token.raise_if_cancelled()
        return proof

    def _submit(self, kind: str, fn, inp, artifacts, on_progress) -> ProofTask:
        task = ProofTask(kind, on_progress)
        task._resubmit = lambda: self._submit(kind, fn, inp, artifacts, on_progress)
        task.future = self._executor.submit(self._run, task, fn, inp, artifacts)
        logger.info(f"Submitted {kind} proof task {task.id}")
        return task

    def submit_withdrawal(
        self,
        inp: WithdrawalProofInput,
        artifacts: CircuitArtifacts = DEFAULT_WITHDRAW_ARTIFACTS,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProofTask:
        return self._submit("withdrawal", generate_withdrawal_proof, inp, artifacts, on_progress)

    def submit_merge_deposit(
        self,
        inp: MergeDepositProofInput,
        artifacts: CircuitArtifacts = DEFAULT_MERGE_DEPOSIT_ARTIFACTS,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProofTask:
        return self._submit("merge deposit", generate_merge_deposit_proof, inp, artifacts, on_progress)

    async def prove_withdrawal(
        self,
        inp: WithdrawalProofInput,
        artifacts: CircuitArtifacts = DEFAULT_WITHDRAW_ARTIFACTS,
        on_progress: Optional[ProgressCallback] = None,
    ) -> WithdrawalProof:
        return await self.submit_withdrawal(inp, artifacts, on_progress).wait()

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ProverClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
