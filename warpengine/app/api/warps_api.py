############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# warps_api.py: Warp session endpoints
#
############################################################

"""Warp session endpoints (/v1/warps)."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from warpengine.app.api.auth import get_current_user_id
from warpengine.app.api.schemas import entities
from warpengine.app.core.warps.engine import WarpLifecycleEngine
from warpengine.app.core.warps.errors import InsufficientBalanceError, WarpError
from warpengine.app.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/warps", tags=["warps"])


def get_warp_engine(request: Request) -> WarpLifecycleEngine:
    """The engine built during application startup."""
    return request.app.state.warp_engine


def _to_http_exception(e: WarpError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("")
async def create_warp(
    user_id: str = Depends(get_current_user_id),
    engine: WarpLifecycleEngine = Depends(get_warp_engine),
) -> Dict[str, Any]:
    """
    Start a warp, or return the caller's active one.

    An existing warp is synced first and returned with an estimated
    balance; a new warp has not started billing yet.
    """
    try:
        result = await engine.create_warp(user_id)
        if result.created:
            return entities(warps=[result.warp])

        warp = await engine.sync_warp(result.warp.id) or result.warp
        estimate = await engine.estimate_balance(warp)
    except WarpError as e:
        logger.warning("warp_create_rejected", user_id=user_id, error=e.message)
        raise _to_http_exception(e)

    return entities(warps=[warp], estimatedUserTimeBalance=estimate)


@router.get("")
async def list_warps(
    user_id: str = Depends(get_current_user_id),
    engine: WarpLifecycleEngine = Depends(get_warp_engine),
) -> Dict[str, Any]:
    """List the caller's warps, newest first."""
    try:
        warps = await engine.list_warps(user_id)
    except WarpError as e:
        raise _to_http_exception(e)
    return entities(warps=warps)


@router.get("/{warp_id}")
async def get_warp(
    warp_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: WarpLifecycleEngine = Depends(get_warp_engine),
) -> Dict[str, Any]:
    """Get one warp, synced with RunPod."""
    try:
        warp = await engine.get_warp(user_id, warp_id)
    except WarpError as e:
        raise _to_http_exception(e)
    return entities(warps=[warp])


@router.post("/{warp_id}/heartbeat")
async def heartbeat(
    warp_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: WarpLifecycleEngine = Depends(get_warp_engine),
):
    """
    Keep a running warp alive.

    Answers 402 with the cancelled warp and updated user once the
    balance is exhausted.
    """
    try:
        result = await engine.heartbeat(user_id, warp_id)
    except InsufficientBalanceError as e:
        body = entities(
            warps=[e.warp],
            users=[e.user] if e.user else [],
            estimatedUserTimeBalance=0,
        )
        body["success"] = False
        body["error"] = e.message
        return JSONResponse(status_code=e.status_code, content=body)
    except WarpError as e:
        raise _to_http_exception(e)

    return entities(
        warps=[result.warp], estimatedUserTimeBalance=result.estimated_balance
    )


@router.post("/{warp_id}/end")
async def end_warp(
    warp_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: WarpLifecycleEngine = Depends(get_warp_engine),
) -> Dict[str, Any]:
    """End a warp and settle the caller's balance."""
    try:
        result = await engine.end_warp(user_id, warp_id)
    except WarpError as e:
        logger.warning("warp_end_failed", warp_id=warp_id, error=e.message)
        raise _to_http_exception(e)

    return entities(
        warps=[result.warp],
        users=[result.user] if result.user else [],
        alreadyEnded=result.already_terminal,
    )
