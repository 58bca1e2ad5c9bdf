"""Pydantic schemas for stash endpoints."""

from typing import Optional

from pydantic import Field

from stashu_engine.common.schemas import CamelModel


class StashCreate(CamelModel):
    blob_url: str = Field(..., min_length=1)
    secret_key: str = Field(..., min_length=1)
    price_sats: int = Field(..., gt=0)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., gt=0)
    preview_url: Optional[str] = None
    # Ignored: the seller is always the authenticated pubkey
    seller_pubkey: Optional[str] = None


class StashCreated(CamelModel):
    id: str
    share_url: str


class StashPublicInfo(CamelModel):
    """What a buyer sees before paying; never includes the key or blob URL."""

    id: str
    title: str
    description: Optional[str] = None
    file_name: str
    file_size: int
    price_sats: int
    preview_url: Optional[str] = None
