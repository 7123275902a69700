from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from facilitator.health.service import ledger_health_info, token_store_health_info
from facilitator.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/ready")
def health_ready(request: Request):
    ledger = ledger_health_info()
    tokens = token_store_health_info()
    ok = ledger["ok"] and tokens["ok"]
    body = {"ok": ok, "ledger": ledger, "tokenStore": tokens, "rateLimit": rate_limit_health_info(request)}
    return JSONResponse(body, status_code=200 if ok else 503)
