"""
neardrop API Server - FastAPI Backend

Endpoints:
- GET    /health              Heartbeat
- GET    /account             Signed-in account + balance
- GET    /drops               Reconcile, then list active drops with links
- POST   /drops               Fund a new drop
- DELETE /drops/{public_key}  Reclaim an unclaimed drop
- POST   /links/decode        Parse a shared drop link
- POST   /claim               Redeem a shared drop link

One signed-in account per process (NEAR_ACCOUNT_ID). No sign-in flow and no
rendering: this is a transport over the drop protocols. Every request gets
its own PresetDecisions port built from the request body, so answers and
confirmations travel with the request.
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from drops.claim import ClaimOutcome, ClaimProtocol, ClaimResult, ClaimVariant
from drops.context import DropContext
from drops.errors import (
    ConfigurationError,
    DropError,
    RemoteRejection,
    RemoteUnavailable,
    StorageError,
    ValidationError,
)
from drops.funding import FundingProtocol
from drops.links import decode, share_link
from drops.ports import PresetDecisions
from drops.reconcile import ReconciliationEngine
from drops.store import Drop
from drops.units import format_near

logger = logging.getLogger("neardrop.api")


# ============================================================
# MODELS
# ============================================================

class FundRequest(BaseModel):
    amount: str = Field(..., max_length=40)     # NEAR, e.g. "0.5"
    limited: bool = False


class DropResponse(BaseModel):
    public_key: str
    amount: str                                 # yoctoNEAR, decimal string
    amount_near: str
    limited: bool
    wallet_link: str
    share_link: str


class DecodeRequest(BaseModel):
    link: str = Field(..., max_length=4000)


class ClaimRequest(BaseModel):
    link: str = Field(..., max_length=4000)
    variant: ClaimVariant = ClaimVariant.CLAIM
    account_id: Optional[str] = Field(None, max_length=64)


# HTTP status for unsuccessful claim outcomes
_OUTCOME_STATUS = {
    ClaimOutcome.REJECTED: 409,
    ClaimOutcome.UNAVAILABLE: 503,
    ClaimOutcome.NOT_FOUND: 404,
}


def http_error(e: DropError) -> HTTPException:
    """Map the drop error taxonomy onto HTTP status codes."""
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, RemoteRejection):
        return HTTPException(409, str(e))
    if isinstance(e, RemoteUnavailable):
        return HTTPException(503, "Ledger unavailable, try again later")
    if isinstance(e, (StorageError, ConfigurationError)):
        logger.error(f"{type(e).__name__}: {e}")
        return HTTPException(500, "Internal storage or configuration error")
    return HTTPException(500, str(e))


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    ctx: DropContext,
    reconciler: Optional[ReconciliationEngine] = None,
    contract_code: Optional[bytes] = None,
) -> FastAPI:
    """
    Create FastAPI app wired to one DropContext.

    reconciler: shared engine (main.py also drives it periodically)
    contract_code: multisig wasm for create_contract; read from config when None
    """
    if reconciler is None:
        reconciler = ReconciliationEngine.from_context(ctx)

    app = FastAPI(
        title="neardrop",
        description="Fund, share and claim NEAR linkdrops.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _drop_response(drop: Drop) -> DropResponse:
        return DropResponse(
            public_key=drop.public_key,
            amount=str(drop.amount),
            amount_near=format_near(drop.amount),
            limited=drop.limited,
            wallet_link=drop.wallet_link,
            share_link=share_link(ctx.config.app_url, drop, ctx.account_id),
        )

    def _claim_response(result: ClaimResult, port: PresetDecisions) -> dict:
        status = _OUTCOME_STATUS.get(result.outcome)
        if status is not None:
            raise HTTPException(status, result.message or result.outcome.value)
        return {**result.to_dict(), "notifications": port.notifications}

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "alive": True,
            "account_id": ctx.account_id,
            "network_id": ctx.config.network_id,
            "contract_name": ctx.contract_name,
            "gateway": type(ctx.gateway).__name__,
            "reconcile_passes": reconciler.pass_count,
        }

    @app.get("/account")
    async def account():
        """Signed-in account and its ledger balance."""
        try:
            balance = await ctx.gateway.get_account_balance(ctx.account_id)
        except DropError as e:
            raise http_error(e)
        result = {
            "account_id": ctx.account_id,
            "balance": str(balance),
            "balance_near": format_near(balance),
        }
        if ctx.credentials is not None:
            result["credentials"] = ctx.credentials.get_status()
        return result

    @app.get("/drops")
    async def list_drops():
        """Reconcile against the ledger, then list what is still claimable."""
        try:
            report = await reconciler.reconcile(ctx.account_id)
        except DropError as e:
            raise http_error(e)
        return {
            "account_id": ctx.account_id,
            "drops": [_drop_response(d) for d in report.active],
            "pruned": report.pruned,
            "unreachable": report.unreachable,
        }

    @app.post("/drops", response_model=DropResponse)
    async def fund(req: FundRequest):
        """Fund a new drop from the signed-in account."""
        port = PresetDecisions(amount=req.amount)
        funding = FundingProtocol(ctx.with_decisions(port), reconciler=reconciler)
        try:
            drop = await funding.fund_drop(limited=req.limited)
        except DropError as e:
            raise http_error(e)
        return _drop_response(drop)

    @app.delete("/drops/{public_key}")
    async def reclaim(public_key: str):
        """Claim an unclaimed drop back into the signed-in account."""
        port = PresetDecisions()
        claims = ClaimProtocol(
            ctx.with_decisions(port), reconciler=reconciler, contract_code=contract_code
        )
        try:
            result = await claims.reclaim(public_key)
        except DropError as e:
            raise http_error(e)
        return _claim_response(result, port)

    @app.post("/links/decode")
    async def decode_link(req: DecodeRequest):
        """Parse a shared link. No drop in the link is a normal answer, not an error."""
        ref = decode(req.link)
        if ref is None:
            return {"drop": None}
        return {"drop": {**ref.to_dict(), "amount": str(ref.amount), "amount_near": format_near(ref.amount)}}

    @app.post("/claim")
    async def claim(req: ClaimRequest):
        """Redeem a shared link with one of the claim variants."""
        ref = decode(req.link)
        if ref is None:
            raise HTTPException(400, "Link does not contain a drop")

        port = PresetDecisions(account_id=req.account_id)
        claims = ClaimProtocol(
            ctx.with_decisions(port), reconciler=reconciler, contract_code=contract_code
        )
        try:
            result = await claims.claim(req.variant, ref, req.account_id)
        except DropError as e:
            raise http_error(e)

        logger.info(f"Claim via API: {result.variant.value} -> {result.outcome.value}")
        return _claim_response(result, port)

    return app
