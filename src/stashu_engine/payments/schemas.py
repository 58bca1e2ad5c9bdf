"""Pydantic schemas for unlock and pay endpoints."""

from typing import Optional

from stashu_engine.common.schemas import CamelModel


class UnlockRequest(CamelModel):
    token: str = ""


class UnlockResponse(CamelModel):
    secret_key: str
    blob_url: str
    file_name: str


class InvoiceResponse(CamelModel):
    invoice: str
    quote_id: str
    amount_sats: int
    expires_at: Optional[int] = None


class PayStatusResponse(CamelModel):
    paid: bool
    processing: bool = False
    secret_key: Optional[str] = None
    blob_url: Optional[str] = None
    file_name: Optional[str] = None
