"""
Sync API routes.

The device-side custom REST provider talks to these endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from pixelsync.remote_db import ServerDatabase, get_server_db
from pixelsync.sync.models import (
    SyncAllResponse,
    SyncDeleteResponse,
    SyncItemsResponse,
    SyncPushRequest,
    SyncPushResponse,
)


logger = structlog.get_logger()
router = APIRouter(prefix="/api/sync", tags=["sync"])


# Declared before the generic entity route so "all" is not read as an entity name
@router.get("/all/{user_id}", response_model=SyncAllResponse)
async def pull_all(
    user_id: str,
    server_db: ServerDatabase = Depends(get_server_db),
):
    """Every entity stored for a user, keyed by entity name."""
    try:
        return SyncAllResponse(data=await server_db.get_all(user_id))
    except Exception as e:
        logger.error("sync_pull_all_failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )


@router.get("/{entity}/{user_id}", response_model=SyncItemsResponse)
async def pull_entity(
    entity: str,
    user_id: str,
    server_db: ServerDatabase = Depends(get_server_db),
):
    """All records of one entity stored for a user."""
    try:
        items = await server_db.get_entity(user_id, entity)
    except Exception as e:
        logger.error("sync_pull_failed", entity=entity, user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )
    logger.info("sync_pull", entity=entity, user_id=user_id, count=len(items))
    return SyncItemsResponse(items=items)


@router.post("/{entity}/{user_id}", response_model=SyncPushResponse)
async def push_entity(
    entity: str,
    user_id: str,
    request: SyncPushRequest,
    server_db: ServerDatabase = Depends(get_server_db),
):
    """
    Upsert records of one entity.

    **Request Body:**
    - `items`: records, each with an `id`
    - `deviceId`: pushing device
    - `timestamp`: client time of the push
    """
    try:
        saved = await server_db.upsert_items(user_id, entity, request.items)
    except Exception as e:
        logger.error("sync_push_failed", entity=entity, user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )
    logger.info(
        "sync_push", entity=entity, user_id=user_id, device_id=request.deviceId, saved=saved
    )
    return SyncPushResponse(saved=saved)


@router.delete("/{entity}/{user_id}/{item_id}", response_model=SyncDeleteResponse)
async def delete_item(
    entity: str,
    user_id: str,
    item_id: str,
    server_db: ServerDatabase = Depends(get_server_db),
):
    try:
        deleted = await server_db.delete_item(user_id, entity, item_id)
    except Exception as e:
        logger.error("sync_delete_failed", entity=entity, user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )
    return SyncDeleteResponse(success=deleted)
