#!/usr/bin/env python3
"""
Health checks for the pool service: database, chain RPC, indexer, prover
tooling, plus process resource metrics.
"""
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

import httpx
import psutil

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()

HEALTHY_STATES = ("healthy", "disabled", "not_configured")


async def check_database_health() -> Dict[str, Any]:
    """
    Check database connectivity and latency

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        from shielded_pool.database.config import test_connection_async

        start = time.time()
        await test_connection_async()
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2)
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e)
        }


async def check_rpc_health(rpc_url: str) -> Dict[str, Any]:
    """
    Check EVM JSON-RPC connectivity (eth_blockNumber)

    Args:
        rpc_url: JSON-RPC endpoint URL

    Returns:
        dict with status, block_number, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}
            )
            response.raise_for_status()
            body = response.json()
        if "error" in body:
            raise RuntimeError(body["error"].get("message", "rpc error"))
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "block_number": int(body["result"], 16),
            "response_time_ms": round(response_time, 2),
            "rpc_url": rpc_url
        }
    except Exception as e:
        logger.error(f"RPC health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "rpc_url": rpc_url
        }


async def check_indexer_health(indexer_url: str) -> Dict[str, Any]:
    """
    Check the indexer's /ready endpoint

    Returns:
        dict with status and response_time_ms; "syncing" while the
        indexer is still catching up
    """
    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{indexer_url.rstrip('/')}/ready")
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy" if response.status_code == 200 else "syncing",
            "response_time_ms": round(response_time, 2),
        }
    except Exception as e:
        logger.error(f"Indexer health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def check_prover_health() -> Dict[str, Any]:
    """snarkjs reachable and withdrawal artifacts present"""
    binary = config.SNARKJS_BIN.split()[0]
    circuits = Path(config.CIRCUITS_DIR)
    artifacts = {
        "wasm": (circuits / "withdraw.wasm").is_file(),
        "zkey": (circuits / "withdraw_final.zkey").is_file(),
    }
    ok = shutil.which(binary) is not None and all(artifacts.values())
    return {
        "status": "healthy" if ok else "degraded",
        "snarkjs": shutil.which(binary),
        "artifacts": artifacts,
        "circuit_version": config.CIRCUIT_VERSION,
    }


def get_system_metrics() -> Dict[str, Any]:
    """
    Get system resource metrics

    Returns:
        dict with CPU, memory, and disk usage
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        return {
            "cpu": {
                "usage_percent": round(cpu_percent, 2),
                "count": psutil.cpu_count()
            },
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2)
            },
            "disk": {
                "usage_percent": round(disk.percent, 2),
                "used_gb": round(disk.used / (1024 ** 3), 2),
                "total_gb": round(disk.total / (1024 ** 3), 2)
            }
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    """
    Get API uptime

    Returns:
        dict with uptime_seconds and uptime_formatted
    """
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str
    }


async def comprehensive_health_check(
    database_enabled: bool,
    rpc_url: Optional[str] = None,
    indexer_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Perform health check of every dependency

    Args:
        database_enabled: Whether the ASP database is in use
        rpc_url: JSON-RPC URL to check
        indexer_url: Indexer base URL to check

    Returns:
        dict with overall status and component statuses
    """
    checks = {}

    checks["database"] = await check_database_health() if database_enabled else {"status": "disabled"}
    checks["rpc"] = await check_rpc_health(rpc_url) if rpc_url else {"status": "not_configured"}
    checks["indexer"] = await check_indexer_health(indexer_url) if indexer_url else {"status": "not_configured"}
    checks["prover"] = check_prover_health()
    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    component_statuses = [
        checks["database"].get("status"),
        checks["rpc"].get("status"),
        checks["indexer"].get("status"),
    ]

    # prover problems degrade the service but do not make it unhealthy
    if all(s in HEALTHY_STATES for s in component_statuses):
        overall_status = "healthy" if checks["prover"]["status"] == "healthy" else "degraded"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }


async def readiness_check(
    database_enabled: bool,
    rpc_url: Optional[str] = None,
    indexer_url: Optional[str] = None,
) -> bool:
    """
    Check if the service is ready to serve requests

    Returns:
        True if all configured critical dependencies are healthy
    """
    try:
        checks = []
        if database_enabled:
            checks.append((await check_database_health())["status"] == "healthy")
        if rpc_url:
            checks.append((await check_rpc_health(rpc_url))["status"] == "healthy")
        if indexer_url:
            checks.append((await check_indexer_health(indexer_url))["status"] == "healthy")
        return all(checks)
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return False
