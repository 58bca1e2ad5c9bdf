"""Seller API router — dashboard, earnings, settings and withdrawal.

Every route is NIP-98 authenticated and scoped to the caller's own pubkey.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from stashu_engine.common.schemas import APIResponse
from stashu_engine.common.security import ensure_owner, require_pubkey
from stashu_engine.deps import Services, get_services
from stashu_engine.settlement.schemas import (
    DashboardResponse,
    EarningsResponse,
    SellerSettingsBody,
    SellerSettingsResponse,
    SettlementLogEntry,
    WithdrawQuoteResponse,
    WithdrawRequest,
    WithdrawResponse,
)

router = APIRouter(prefix="/api")


# ── Dashboard ──

@router.get("/dashboard/{pubkey}", response_model=APIResponse[DashboardResponse])
async def dashboard(
    pubkey: str,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    ensure_owner(authed, pubkey)
    result = await services.settlement.dashboard(pubkey)
    return APIResponse(data=DashboardResponse.model_validate(asdict(result)))


@router.get("/dashboard/{pubkey}/settlements", response_model=APIResponse[list[SettlementLogEntry]])
async def settlement_history(
    pubkey: str,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    ensure_owner(authed, pubkey)
    rows = await services.settlement.settlement_history(pubkey)
    return APIResponse(data=[SettlementLogEntry.model_validate(r) for r in rows])


@router.get("/earnings/{pubkey}", response_model=APIResponse[EarningsResponse])
async def earnings(
    pubkey: str,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    ensure_owner(authed, pubkey)
    result = await services.settlement.earnings(pubkey)
    return APIResponse(data=EarningsResponse(tokens=result.tokens, total_sats=result.total_sats))


# ── Settings ──

@router.get("/settings/{pubkey}", response_model=APIResponse[SellerSettingsResponse])
async def get_settings(
    pubkey: str,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    ensure_owner(authed, pubkey)
    result = await services.settlement.get_settings(pubkey)
    return APIResponse(data=SellerSettingsResponse(**asdict(result)))


@router.post("/settings/{pubkey}", response_model=APIResponse[SellerSettingsResponse])
async def save_settings(
    pubkey: str,
    body: SellerSettingsBody,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    ensure_owner(authed, pubkey)
    result = await services.settlement.save_settings(
        pubkey, body.ln_address, body.auto_withdraw_threshold,
    )
    return APIResponse(data=SellerSettingsResponse(**asdict(result)))


# ── Withdrawal ──

@router.post("/withdraw/quote", response_model=APIResponse[WithdrawQuoteResponse])
async def withdraw_quote(
    body: WithdrawRequest,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    if body.pubkey:
        ensure_owner(authed, body.pubkey)
    result = await services.settlement.withdraw_quote(authed, body.invoice)
    return APIResponse(data=WithdrawQuoteResponse(**asdict(result)))


@router.post("/withdraw/execute", response_model=APIResponse[WithdrawResponse])
async def withdraw_execute(
    body: WithdrawRequest,
    authed: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    if body.pubkey:
        ensure_owner(authed, body.pubkey)
    result = await services.settlement.withdraw(authed, body.invoice)
    return APIResponse(data=WithdrawResponse(**asdict(result)))
