# shielded_pool/api/app.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from shielded_pool import config
from shielded_pool.api import health_checks
from shielded_pool.api.logging_config import get_logger, setup_logging
from shielded_pool.api.preflight import PreflightService
from shielded_pool.api.schemas_api import (
    AspProofRes,
    AspStatusRes,
    AspSyncReq,
    AspSyncRes,
    FormatProofReq,
    FormatProofRes,
    PreflightChecksModel,
    PreflightReq,
    PreflightRes,
)
from shielded_pool.asp.postman import EntrypointClient, PostmanError
from shielded_pool.asp.service import AspError, AssociationSetService
from shielded_pool.asp.store import AspStore
from shielded_pool.crypto_core.field import FieldError, to_field
from shielded_pool.database.config import dispose_engine
from shielded_pool.crypto_core.merkle import MAX_TREE_DEPTH, LeafNotFoundError
from shielded_pool.crypto_core.prover import (
    Groth16Proof,
    ProofError,
    WithdrawalProof,
    encode_proof_as_bytes,
    format_proof_for_contract,
)
from shielded_pool.indexer.client import IndexerClient, IndexerError

logger = get_logger("api")


# =========================
# Service wiring
# =========================

@dataclass
class PoolServices:
    indexer: IndexerClient
    chain: Optional[EntrypointClient]
    asp: Optional[AssociationSetService]
    preflight: PreflightService
    database_enabled: bool = True
    rpc_url: Optional[str] = None
    indexer_url: Optional[str] = None

    async def close(self) -> None:
        if self.asp is not None:
            await self.asp.close()
        await self.indexer.close()


async def build_services() -> PoolServices:
    """Wire the production collaborators from environment settings."""
    indexer = IndexerClient(page_size=config.ASP_PAGE_SIZE)
    chain = None
    if config.ENTRYPOINT_ADDRESS or config.POOL_ADDRESS:
        chain = EntrypointClient()

    asp = None
    if config.POOL_ADDRESS:
        if config.POOL_SCOPE:
            scope = to_field(config.POOL_SCOPE, "POOL_SCOPE")
        elif chain is not None:
            scope = await chain.pool_scope()
        else:
            scope = None
        if scope is not None:
            asp = AssociationSetService(
                scope=scope,
                pool_address=config.POOL_ADDRESS,
                store=AspStore(),
                deposits=indexer,
                chain=chain if config.ENTRYPOINT_ADDRESS else None,
            )
    else:
        logger.warning("POOL_ADDRESS not set; association set disabled")

    return PoolServices(
        indexer=indexer,
        chain=chain,
        asp=asp,
        preflight=PreflightService(indexer, asp, chain if config.POOL_ADDRESS else None),
        database_enabled=asp is not None,
        rpc_url=config.RPC_URL,
        indexer_url=config.INDEXER_URL,
    )


def create_app(services: Optional[PoolServices] = None, run_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        svc = services or await build_services()
        app.state.services = svc

        stop = asyncio.Event()
        job = None
        if svc.asp is not None:
            try:
                await svc.asp.initialize()
            except Exception as e:
                logger.error(f"Association set failed to initialize: {e}")
            if run_scheduler and config.ASP_SYNC_INTERVAL > 0:
                job = asyncio.create_task(svc.asp.run_periodic(config.ASP_SYNC_INTERVAL, stop))

        try:
            yield
        finally:
            stop.set()
            if job is not None:
                await job
            if services is None:
                await svc.close()
            await dispose_engine()

    app = FastAPI(title="Shielded Pool API", version="0.1.0", lifespan=lifespan)
    _register_errors(app)
    _register_routes(app)
    return app


def get_services(request: Request) -> PoolServices:
    return request.app.state.services


def get_asp(svc: PoolServices = Depends(get_services)) -> AssociationSetService:
    if svc.asp is None:
        raise HTTPException(status_code=503, detail="Association set not configured (POOL_ADDRESS)")
    return svc.asp


# =========================
# Error mapping
# =========================

def _register_errors(app: FastAPI) -> None:
    def _json(status: int, detail: str) -> JSONResponse:
        return JSONResponse(status_code=status, content={"detail": detail})

    @app.exception_handler(AspError)
    async def _asp_error(_: Request, e: AspError):
        return _json(503, str(e))

    @app.exception_handler(IndexerError)
    async def _indexer_error(_: Request, e: IndexerError):
        return _json(502, f"Indexer error: {e}")

    @app.exception_handler(PostmanError)
    async def _postman_error(_: Request, e: PostmanError):
        return _json(502, f"On-chain call failed: {e}")

    @app.exception_handler(FieldError)
    async def _field_error(_: Request, e: FieldError):
        return _json(400, str(e))


# =========================
# Routes
# =========================

def _register_routes(app: FastAPI) -> None:

    # ---------- Health ----------

    @app.get("/health")
    async def health(svc: PoolServices = Depends(get_services)) -> Dict[str, Any]:
        report = await health_checks.comprehensive_health_check(
            database_enabled=svc.database_enabled,
            rpc_url=svc.rpc_url,
            indexer_url=svc.indexer_url,
        )
        if svc.asp is not None:
            report["checks"]["asp"] = {"state": svc.asp.state.value, "size": svc.asp.size}
        return report

    @app.get("/health/ready")
    async def ready(svc: PoolServices = Depends(get_services)) -> Dict[str, Any]:
        ok = await health_checks.readiness_check(
            database_enabled=svc.database_enabled,
            rpc_url=svc.rpc_url,
            indexer_url=svc.indexer_url,
        )
        if not ok:
            raise HTTPException(status_code=503, detail="Not ready")
        return {"status": "ready"}

    @app.get("/health/live")
    async def live() -> Dict[str, Any]:
        return {"status": "alive", **health_checks.get_uptime()}

    # ---------- Association set ----------

    @app.get("/asp/status", response_model=AspStatusRes)
    async def asp_status(asp: AssociationSetService = Depends(get_asp)):
        await asp.initialize()
        st = await asp.status()
        return AspStatusRes(
            synced=st.synced,
            local_root=str(st.local_root),
            on_chain_root=str(st.on_chain_root) if st.on_chain_root is not None else None,
            size=st.size,
            depth=st.depth,
            state=st.state.value,
            cursor_offset=st.cursor_offset,
            last_block=st.last_block,
            error=st.error,
        )

    @app.post("/asp/sync", response_model=AspSyncRes)
    async def asp_sync(req: AspSyncReq, asp: AssociationSetService = Depends(get_asp)):
        result = await (asp.rebuild_from_deposits() if req.rebuild else asp.process_new_deposits())
        published = None
        if req.publish and asp.chain is not None and asp.chain.can_publish:
            published = await asp.update_on_chain_root()
        return AspSyncRes(
            new_labels=[str(x) for x in result.new_labels],
            root=str(result.root),
            size=result.size,
            cursor_offset=result.cursor_offset,
            published=bool(published and published.updated),
            tx_hash=published.tx_hash if published else None,
        )

    @app.get("/asp/proof/{label}", response_model=AspProofRes)
    async def asp_proof(label: str, asp: AssociationSetService = Depends(get_asp)):
        await asp.initialize()
        try:
            proof = asp.generate_proof(to_field(label, "label"))
        except LeafNotFoundError:
            raise HTTPException(status_code=404, detail="Label not found in ASP tree")
        return AspProofRes(
            root=str(proof.root),
            leaf=str(proof.leaf),
            index=proof.index,
            siblings=[str(s) for s in proof.padded_siblings(MAX_TREE_DEPTH)],
            depth=proof.depth,
        )

    # ---------- Preflight ----------

    @app.post("/preflight/private-send", response_model=PreflightRes)
    async def preflight_private_send(req: PreflightReq, svc: PoolServices = Depends(get_services)):
        result = await svc.preflight.preflight_private_send(req.pool_address, req.deposit_label)
        return PreflightRes(
            can_proceed=result.can_proceed,
            checks=PreflightChecksModel(
                indexer_synced=result.checks.indexer_synced,
                asp_synced=result.checks.asp_synced,
                state_tree_valid=result.checks.state_tree_valid,
                label_exists=result.checks.label_exists,
            ),
            errors=result.errors,
            warnings=result.warnings,
            retry_after_ms=result.retry_after_ms,
            local_state_root=str(result.local_state_root) if result.local_state_root is not None else None,
            on_chain_state_root=str(result.on_chain_state_root) if result.on_chain_state_root is not None else None,
        )

    # ---------- Proof formatting ----------

    @app.post("/proof/format", response_model=FormatProofRes)
    async def proof_format(req: FormatProofReq):
        try:
            signals = [int(s) for s in req.public_signals]
            proof = WithdrawalProof(
                proof=Groth16Proof.from_dict(req.proof.model_dump()),
                public_signals=signals,
                new_commitment_hash=signals[0],
                existing_nullifier_hash=signals[1],
            )
        except (ValueError, ProofError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid proof: {e}")

        f = format_proof_for_contract(proof)
        return FormatProofRes(
            pA=[str(x) for x in f["pA"]],
            pB=[[str(x) for x in pair] for pair in f["pB"]],
            pC=[str(x) for x in f["pC"]],
            public_signals=[str(x) for x in f["publicSignals"]],
            encoded=encode_proof_as_bytes(proof),
        )


app = create_app()
