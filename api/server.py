"""
Silene API Server - FastAPI Backend

Endpoints:
- GET    /health                          Heartbeat + ledger status
- GET    /will/config                     EIP-712 domain/types, token, default limits
- POST   /will/authorize                  Store a signed will (create or update pending)
- GET    /will/status/{owner}             Latest will of an owner
- POST   /will/execute                    Trigger distribution
- POST   /will/{will_id}/vault            Switch a pending will to vault mode
- POST   /will/{will_id}/wallets          Link a wallet (personal_sign opt-in)
- GET    /will/{will_id}/wallets          Linked wallets (?all=true includes removed)
- DELETE /will/{will_id}/wallets/{addr}   Unlink a wallet
- GET    /transactions                    Recent ledger records
- GET    /transactions/wallet/{address}   Records by source wallet
- GET    /transactions/will/{will_id}     Records of one will
- POST   /will/verify-intent              Social intent verification
- POST   /will/reallocate                 Weighted reallocation

Amounts cross the wire as decimal strings.
"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from engine.constitution import DISTRIBUTION_LAWS, EIP712_DOMAIN_TYPE, WILL_TYPES
from engine.models import Beneficiary, Err, ErrorKind

logger = logging.getLogger("silene.api")


# ============================================================
# MODELS
# ============================================================

class AuthorizeRequest(BaseModel):
    owner: str
    # kept as raw dicts: the signed bytes depend on exact values
    beneficiaries: list[dict]
    totalAmount: Union[int, str]
    validUntil: int
    signature: str
    useStablecoin: bool = False
    spendingLimits: Optional[dict] = None


class ExecuteRequest(BaseModel):
    willId: str
    owner: str
    overrideBeneficiaries: Optional[list[dict]] = None


class VaultRequest(BaseModel):
    owner: str
    vaultAddress: str


class LinkWalletRequest(BaseModel):
    address: str
    signature: str


class VerifyIntentRequest(BaseModel):
    manifesto: str = Field("", max_length=10000)
    beneficiaries: list[dict]
    handle: str = ""
    lang: str = "en"


class ReallocateRequest(BaseModel):
    beneficiaries: list[dict]
    extractedIntents: list[str] = []
    intentMatch: float = Field(0, ge=0, le=100)
    lang: str = "en"


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.OWNER_MISMATCH: 403,
    ErrorKind.WRONG_STATUS: 409,
    ErrorKind.NOT_CONFIGURED: 503,
}


def _raise(err: Err):
    raise HTTPException(_HTTP_STATUS.get(err.kind, 400), {"error": err.kind.value, "detail": err.detail})


def _parse_amount(raw) -> int:
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise HTTPException(400, f"invalid amount: {raw!r}")
    if value != value.to_integral_value() or value < 0:
        raise HTTPException(400, f"amount must be a non-negative integer: {raw!r}")
    return int(value)


def _parse_beneficiaries(items: list[dict]) -> list[Beneficiary]:
    try:
        return [Beneficiary.from_dict(b) for b in items]
    except (TypeError, ValueError, AttributeError) as e:
        raise HTTPException(400, {"error": ErrorKind.INVALID_PLAN.value, "detail": f"malformed beneficiary: {e}"})


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    will_service,
    store,
    reallocation_engine=None,
    intent_verifier=None,
    ledger=None,
) -> FastAPI:
    """Create FastAPI app wired to the engine."""
    app = FastAPI(
        title="Silene - dead man's switch",
        description="Signed wills, multi-wallet fan-out, intent-aware reallocation.",
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

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "status": "ok",
            "ledger": ledger.get_status() if ledger is not None else {"initialized": False},
        }

    @app.get("/will/config")
    async def will_config():
        domain = will_service.verifier.domain
        return {
            "domain": domain,
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **WILL_TYPES},
            "primaryType": "WillAuthorization",
            "custodyAddress": getattr(ledger, "custody_address", "") if ledger else "",
            "settlementToken": getattr(ledger, "settlement_token", "") if ledger else "",
            "defaultLimits": {
                "perTxLimit": str(DISTRIBUTION_LAWS.DEFAULT_PER_TX_LIMIT),
                "dailyLimit": str(DISTRIBUTION_LAWS.DEFAULT_DAILY_LIMIT),
            },
        }

    @app.post("/will/authorize")
    async def authorize(req: AuthorizeRequest):
        result = will_service.authorize(
            owner=req.owner,
            beneficiaries=req.beneficiaries,
            total_amount=_parse_amount(req.totalAmount),
            valid_until=req.validUntil,
            signature=req.signature,
            use_stablecoin=req.useStablecoin,
            custom_limits=req.spendingLimits,
        )
        if not result.ok:
            _raise(result)
        return {"success": True, "willId": result.value}

    @app.get("/will/status/{owner}")
    async def will_status(owner: str):
        result = will_service.get_status(owner)
        if not result.ok:
            _raise(result)
        will = result.value
        wallets = store.get_linked_wallets(will.will_id, approved_only=True)
        return {
            "will": will.to_dict(),
            "linkedWallets": [w.to_dict() for w in wallets],
        }

    @app.post("/will/execute")
    async def execute(req: ExecuteRequest):
        result = await will_service.execute(req.willId, req.owner, req.overrideBeneficiaries)
        if not result.ok:
            _raise(result)
        return result.value.to_dict()

    @app.post("/will/{will_id}/vault")
    async def attach_vault(will_id: str, req: VaultRequest):
        result = will_service.attach_vault(will_id, req.owner, req.vaultAddress)
        if not result.ok:
            _raise(result)
        return {"success": True, "will": result.value.to_dict()}

    @app.post("/will/{will_id}/wallets")
    async def link_wallet(will_id: str, req: LinkWalletRequest):
        result = will_service.link_wallet(will_id, req.address, req.signature)
        if not result.ok:
            _raise(result)
        return {"success": True, "wallet": result.value.to_dict()}

    @app.get("/will/{will_id}/wallets")
    async def list_wallets(will_id: str, all: bool = False):
        result = will_service.list_wallets(will_id, include_all=all)
        if not result.ok:
            _raise(result)
        return {"wallets": [w.to_dict() for w in result.value]}

    @app.delete("/will/{will_id}/wallets/{address}")
    async def unlink_wallet(will_id: str, address: str):
        result = will_service.unlink_wallet(will_id, address)
        if not result.ok:
            _raise(result)
        return {"success": result.value}

    @app.get("/transactions")
    async def transactions(limit: int = 100):
        """Public transaction ledger."""
        limit = max(1, min(limit, 1000))
        return {"transactions": [t.to_dict() for t in store.list_recent(limit)]}

    @app.get("/transactions/wallet/{address}")
    async def transactions_by_wallet(address: str):
        return {"transactions": [t.to_dict() for t in store.list_by_wallet(address)]}

    @app.get("/transactions/will/{will_id}")
    async def transactions_by_will(will_id: str):
        return {"transactions": [t.to_dict() for t in store.list_by_will(will_id)]}

    # ============================================================
    # INTENT ROUTES
    # ============================================================

    @app.post("/will/verify-intent")
    async def verify_intent(req: VerifyIntentRequest):
        if intent_verifier is None:
            raise HTTPException(503, "Intent verification not configured")
        beneficiaries = _parse_beneficiaries(req.beneficiaries)
        plan = await intent_verifier.prepare_plan(req.manifesto, beneficiaries, req.handle, req.lang)
        return plan.to_dict()

    @app.post("/will/reallocate")
    async def reallocate(req: ReallocateRequest):
        if reallocation_engine is None:
            raise HTTPException(503, "Reallocation engine not configured")
        beneficiaries = _parse_beneficiaries(req.beneficiaries)
        result = await reallocation_engine.reallocate(
            beneficiaries, req.extractedIntents, req.intentMatch, req.lang
        )
        return result.to_dict()

    return app
