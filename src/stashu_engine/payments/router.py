"""Unlock (token) and pay (Lightning) API router."""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from stashu_engine.common.schemas import APIResponse
from stashu_engine.deps import Services, get_services
from stashu_engine.payments.schemas import (
    InvoiceResponse,
    PayStatusResponse,
    UnlockRequest,
    UnlockResponse,
)

router = APIRouter(prefix="/api")


@router.post("/unlock/{stash_id}", response_model=APIResponse[UnlockResponse])
async def unlock(stash_id: str, body: UnlockRequest, services: Services = Depends(get_services)):
    data = await services.payments.unlock(stash_id, body.token)
    return APIResponse(data=UnlockResponse(**asdict(data)))


@router.post("/pay/{stash_id}/invoice", response_model=APIResponse[InvoiceResponse])
async def create_invoice(stash_id: str, services: Services = Depends(get_services)):
    result = await services.payments.create_invoice(stash_id)
    return APIResponse(data=InvoiceResponse(**asdict(result)))


@router.get("/pay/{stash_id}/status/{quote_id}", response_model=APIResponse[PayStatusResponse])
async def payment_status(stash_id: str, quote_id: str, services: Services = Depends(get_services)):
    result = await services.payments.poll_invoice(stash_id, quote_id)
    unlock_data = asdict(result.unlock) if result.unlock else {}
    return APIResponse(data=PayStatusResponse(
        paid=result.paid, processing=result.processing, **unlock_data,
    ))
