"""
HTTP surface for the claim engine.

Run with ``escrow-claims-api`` or ``uvicorn escrow_claims.api:app``.
"""
import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from escrow_claims import config
from escrow_claims.engine import ClaimEngine
from escrow_claims.errors import EscrowEngineError
from escrow_claims.models import ClaimRequest
from escrow_claims.tokens import default_registry

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Escrow Claims API",
    description="Evaluate and settle escrow claims",
    version="1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_CODE = {
    "MalformedEscrowId": 400,
    "InvalidAmount": 400,
    "UnknownToken": 400,
    "EscrowNotFound": 404,
    "NotActive": 409,
    "WalletNotConnected": 503,
    "NetworkUnavailable": 503,
}


class ClaimPayload(BaseModel):
    escrow_id: str
    receiver: Optional[str] = None
    amount: Optional[str] = None
    claim_all: bool = False
    family: Optional[str] = None

    def to_request(self):
        return ClaimRequest(
            escrow_id=self.escrow_id,
            receiver=self.receiver,
            amount=self.amount,
            claim_all=self.claim_all,
            family=self.family,
        )


class ReconcilePayload(BaseModel):
    addresses: List[str]
    max_age: Optional[float] = None


_engine = None


def get_engine():
    """Engine dependency; built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = ClaimEngine.from_env()
    return _engine


def http_error(error: EscrowEngineError):
    return HTTPException(status_code=STATUS_BY_CODE.get(error.code, 400), detail=error.to_dict())


@app.on_event("shutdown")
async def shutdown_event():
    global _engine
    if _engine is not None:
        await _engine.close()
        _engine = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/config")
async def get_config():
    chain = config.chain_config()
    return {
        "chain_id": config.CHAIN_ID,
        "chain": chain.get("name"),
        "supported_chains": config.SUPPORTED_CHAINS,
        "escrows": {family: settings["address"] for family, settings in chain["escrows"].items()},
        "min_claim": str(config.MIN_CLAIM_AMOUNT),
        "max_claim": str(config.MAX_CLAIM_AMOUNT),
    }


@app.get("/tokens")
async def tokens(chain_id: int = config.CHAIN_ID):
    if chain_id not in config.SUPPORTED_CHAINS:
        raise HTTPException(status_code=400, detail=f"Unsupported chain: {chain_id}")
    return [
        {
            "symbol": t.symbol,
            "name": t.name,
            "decimals": t.decimals,
            "display_decimals": t.display_decimals,
            "address": t.address_on(chain_id),
            "native": t.native,
        }
        for t in default_registry().for_chain(chain_id)
    ]


@app.post("/evaluate_claim")
async def evaluate_claim(payload: ClaimPayload, engine: ClaimEngine = Depends(get_engine)):
    try:
        result = await engine.evaluate_claim(payload.to_request())
    except EscrowEngineError as e:
        raise http_error(e)
    return result.to_dict()


@app.post("/execute_claim")
async def execute_claim(payload: ClaimPayload, engine: ClaimEngine = Depends(get_engine)):
    result = await engine.execute_claim(payload.to_request())
    if result.success:
        logger.info("Claim on %s confirmed: %s", payload.escrow_id, result.tx_hash)
    return result.to_dict()


@app.post("/reconcile")
async def reconcile(payload: ReconcilePayload, engine: ClaimEngine = Depends(get_engine)):
    if not payload.addresses:
        raise HTTPException(status_code=400, detail="No addresses provided")
    try:
        batch = await engine.reconcile_escrows(payload.addresses, max_age=payload.max_age)
    except EscrowEngineError as e:
        raise http_error(e)
    return batch.to_dict()


def main():
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
