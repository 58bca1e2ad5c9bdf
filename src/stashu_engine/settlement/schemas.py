"""Pydantic schemas for seller settings, earnings, dashboard and withdrawal endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from stashu_engine.common.schemas import CamelModel


class SellerSettingsBody(CamelModel):
    ln_address: str = ""
    auto_withdraw_threshold: float = 0


class SellerSettingsResponse(CamelModel):
    ln_address: str
    auto_withdraw_threshold: int


class SettlementLogEntry(CamelModel):
    id: int
    status: str
    amount_sats: Optional[int] = None
    fee_sats: Optional[int] = None
    net_sats: Optional[int] = None
    ln_address: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


class EarningsResponse(CamelModel):
    tokens: list[str] = Field(default_factory=list)
    total_sats: int = 0


class StashStatsResponse(CamelModel):
    id: str
    title: str
    price_sats: int
    unlock_count: int
    total_earned: int
    created_at: datetime


class DashboardResponse(CamelModel):
    stashes: list[StashStatsResponse]
    earnings: EarningsResponse


class WithdrawRequest(CamelModel):
    invoice: str = Field(..., min_length=1)
    # Optional; must match the authenticated pubkey when present
    pubkey: Optional[str] = None


class WithdrawQuoteResponse(CamelModel):
    quote_id: str
    total_sats: int
    amount_sats: int
    fee_sats: int
    net_sats: int


class WithdrawResponse(CamelModel):
    paid: bool
    amount_sats: int
    fee_sats: int
    change_sats: int = 0
    preimage: Optional[str] = None
