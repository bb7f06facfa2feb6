"""
Subprocess Retry Wrapper for external prover tooling

Proof generation shells out to snarkjs (Node). Transient failures (timeouts,
a worker killed by a signal, stderr matching TRANSIENT_PATTERNS) are retried
with exponential backoff. Any other non-zero exit is deterministic, such as a
bad witness or a missing zkey, and raises at once.
"""

import subprocess
import time
from typing import List, Optional, Callable
from pathlib import Path

from shielded_pool.api.logging_config import get_logger

logger = get_logger("subprocess")

# stderr fragments that indicate a transient condition worth a quick retry
TRANSIENT_PATTERNS = (
    "econnrefused",
    "enotfound",
    "econnreset",
    "etimedout",
    "rate limit",
    "429",
    "resource temporarily unavailable",
    "emfile",
)


class SubprocessRetryError(Exception):
    """Raised when subprocess fails after all retries"""
    pass


def is_transient_failure(result: subprocess.CompletedProcess) -> bool:
    if result.returncode < 0:
        return True
    stderr_lower = (result.stderr or "").lower()
    return any(p in stderr_lower for p in TRANSIENT_PATTERNS)


def run_with_retry(
    cmd: List[str],
    max_retries: int = 3,
    timeout: int = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Command",
    on_attempt: Optional[Callable[[int, str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> subprocess.CompletedProcess:
    """
    Run subprocess command with automatic retry logic.

    Features:
    - Exponential backoff between retries (1s, 2s, 4s)
    - Deterministic failures are not retried
    - Captures stdout/stderr for debugging
    - Optional callback on each attempt

    Args:
        cmd: Command list (e.g., ["snarkjs", "groth16", "fullprove", ...])
        max_retries: Maximum attempts (default: 3)
        timeout: Command timeout in seconds (default: 60)
        cwd: Working directory for command
        env: Environment variables
        description: Human-readable description for logging
        on_attempt: Optional callback called on each attempt: (attempt_num, status_msg)
        sleep: Backoff sleep function (injectable for tests)

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessRetryError: If command fails after all retries, or on the
            first non-transient failure
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    last_error = None

    for attempt in range(max_retries):
        status_msg = f"{description} (attempt {attempt + 1}/{max_retries})..."
        logger.info(status_msg)
        if on_attempt:
            on_attempt(attempt + 1, status_msg)

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
        except subprocess.TimeoutExpired as e:
            last_error = e
            logger.warning(f"{description} timed out after {timeout}s")
            if attempt < max_retries - 1:
                sleep(2 ** attempt)
                continue
            raise SubprocessRetryError(
                f"{description} timed out after {max_retries} attempts "
                f"(timeout: {timeout}s)"
            ) from e
        except OSError as e:
            # binary missing or not executable; retrying will not help
            raise SubprocessRetryError(f"{description} could not be started: {e}") from e

        if result.returncode == 0:
            logger.info(f"{description} successful")
            return result

        error_msg = f"{description} failed with exit code {result.returncode}"
        if result.stderr:
            error_msg += f"\nSTDERR: {result.stderr[:500]}"
        logger.warning(error_msg)
        last_error = result.stderr

        if not is_transient_failure(result):
            raise SubprocessRetryError(
                f"{description} failed with exit code {result.returncode} (not retried).\n"
                f"Last error: {last_error}"
            )
        if attempt == max_retries - 1:
            break

        logger.info(f"Transient failure in {description}, retrying...")
        wait_time = 2 ** attempt
        logger.info(f"Retrying in {wait_time}s...")
        sleep(wait_time)

    raise SubprocessRetryError(
        f"{description} failed after {max_retries} attempts.\n"
        f"Last error: {last_error}"
    )
