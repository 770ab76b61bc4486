############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# users_api.py: User account endpoint
#
############################################################

"""User account endpoint (/v1/users)."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from warpengine.app.api.auth import get_current_user_id
from warpengine.app.api.schemas import entities
from warpengine.app.db import crud
from warpengine.app.db.session import get_async_db

router = APIRouter(prefix="/v1/users", tags=["users"])


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db),
) -> Dict[str, Any]:
    """Return the caller's own account, including its time balance."""
    if user_id != current_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user = await crud.get_user_by_id(db, user_id)
    if user is None or user.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return entities(users=[user])
