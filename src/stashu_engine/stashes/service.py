"""Stash catalogue — create and look up stashes."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from stashu_engine.common.exceptions import NotFoundError, ValidationError
from stashu_engine.common.logging import short
from stashu_engine.stashes.models import StashModel

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("blob_url", "secret_key", "title", "file_name")


class StashService:
    """Stashes are immutable once created; only their seller is ever recorded."""

    async def create_stash(
        self, session: AsyncSession, seller_pubkey: str, price_sats: int, file_size: int,
        **fields: Any,
    ) -> StashModel:
        missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
        if missing or price_sats <= 0 or file_size <= 0:
            raise ValidationError("Missing required fields")

        stash = StashModel(
            seller_pubkey=seller_pubkey,
            price_sats=price_sats,
            file_size=file_size,
            blob_url=fields["blob_url"],
            secret_key=fields["secret_key"],
            title=fields["title"],
            file_name=fields["file_name"],
            description=fields.get("description") or None,
            preview_url=fields.get("preview_url") or None,
        )
        session.add(stash)
        await session.flush()
        logger.info("Stash %s created by %s (%d sats)", short(stash.id), short(seller_pubkey), price_sats)
        return stash

    async def get_stash(self, session: AsyncSession, stash_id: str) -> StashModel:
        stash = await session.get(StashModel, stash_id)
        if stash is None:
            raise NotFoundError("Stash not found")
        return stash

