"""Stash API router."""

from fastapi import APIRouter, Depends

from stashu_engine.common.schemas import APIResponse
from stashu_engine.common.security import require_pubkey
from stashu_engine.deps import Services, get_services
from stashu_engine.stashes.schemas import StashCreate, StashCreated, StashPublicInfo

router = APIRouter(prefix="/api/stash")


@router.post("", status_code=201, response_model=APIResponse[StashCreated])
async def create_stash(
    body: StashCreate,
    pubkey: str = Depends(require_pubkey),
    services: Services = Depends(get_services),
):
    fields = body.model_dump(exclude={"price_sats", "file_size", "seller_pubkey"})
    async with services.db.get_session() as session:
        stash = await services.stashes.create_stash(
            session, pubkey, body.price_sats, body.file_size, **fields,
        )
    return APIResponse(data=StashCreated(id=stash.id, share_url=f"/s/{stash.id}"))


@router.get("/{stash_id}", response_model=APIResponse[StashPublicInfo])
async def get_stash(stash_id: str, services: Services = Depends(get_services)):
    async with services.db.get_session() as session:
        stash = await services.stashes.get_stash(session, stash_id)
    return APIResponse(data=StashPublicInfo.model_validate(stash))
