############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# crud.py: Database CRUD operations for users and warps
#
############################################################

"""Database CRUD operations for WarpEngine."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from warpengine.app.db.models import JobStatus, PodStatus, User, Warp


# User CRUD
async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    """Get user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_for_update(db: AsyncSession, user_id: str) -> Optional[User]:
    """Get user by ID, locking the row for the rest of the transaction.

    populate_existing makes sure a row already in the identity map is
    refreshed from the locked read instead of reusing stale attributes.
    """
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_by_stripe_customer(
    db: AsyncSession, customer_id: str
) -> Optional[User]:
    """Get the user linked to a Stripe customer."""
    result = await db.execute(
        select(User).where(User.stripe_customer_id == customer_id).limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_user(db: AsyncSession, user_id: str, meta: Optional[dict] = None) -> User:
    """Create a user, or refresh its metadata if it already exists."""
    user = await get_user_for_update(db, user_id)
    if user:
        user.meta = meta
    else:
        user = User(id=user_id, meta=meta, time_balance=0)
        db.add(user)
    await db.flush()
    return user


async def soft_delete_user(
    db: AsyncSession, user_id: str, deleted_at: datetime
) -> Optional[User]:
    """Mark a user deleted; returns None if it does not exist."""
    user = await get_user_for_update(db, user_id)
    if user:
        user.deleted_at = deleted_at
        await db.flush()
    return user


async def set_stripe_customer_id(
    db: AsyncSession, user_id: str, customer_id: str
) -> None:
    """Link a Stripe customer to a user."""
    await db.execute(
        update(User).where(User.id == user_id).values(stripe_customer_id=customer_id)
    )


async def credit_time_balance(
    db: AsyncSession, user_id: str, seconds: int
) -> Optional[int]:
    """Atomically add seconds to a user's balance; returns the new balance."""
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(time_balance=User.time_balance + seconds)
    )
    result = await db.execute(select(User.time_balance).where(User.id == user_id))
    return result.scalar_one_or_none()


# Warp CRUD
async def get_warp_by_id(db: AsyncSession, warp_id: str) -> Optional[Warp]:
    """Get warp by ID (including soft-deleted rows)."""
    result = await db.execute(select(Warp).where(Warp.id == warp_id))
    return result.scalar_one_or_none()


async def get_warp_for_update(db: AsyncSession, warp_id: str) -> Optional[Warp]:
    """Get warp by ID, locking the row for the rest of the transaction."""
    result = await db.execute(
        select(Warp)
        .where(Warp.id == warp_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_warp(
    db: AsyncSession,
    user_id: str,
    warp_id: str,
    include_deleted: bool = False,
) -> Optional[Warp]:
    """Get a warp only if it belongs to the given user."""
    query = select(Warp).where(Warp.id == warp_id, Warp.created_by_id == user_id)
    if not include_deleted:
        query = query.where(Warp.deleted_at.is_(None))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_active_warp_for_user(db: AsyncSession, user_id: str) -> Optional[Warp]:
    """Get the user's most recent non-terminal, non-deleted warp."""
    result = await db.execute(
        select(Warp)
        .where(
            Warp.created_by_id == user_id,
            Warp.job_status.in_(list(JobStatus.active())),
            Warp.deleted_at.is_(None),
        )
        .order_by(Warp.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_user_warps(db: AsyncSession, user_id: str) -> List[Warp]:
    """Get all non-deleted warps for a user, newest first."""
    result = await db.execute(
        select(Warp)
        .where(Warp.created_by_id == user_id, Warp.deleted_at.is_(None))
        .order_by(Warp.created_at.desc())
    )
    return list(result.scalars().all())


async def create_warp(
    db: AsyncSession,
    user_id: str,
    job_id: str,
    job_status: JobStatus,
    job_requested_at: datetime,
) -> Warp:
    """Create a warp for a freshly started remote job."""
    warp = Warp(
        created_by_id=user_id,
        job_id=job_id,
        job_status=job_status,
        job_requested_at=job_requested_at,
        created_at=job_requested_at,
        updated_at=job_requested_at,
    )
    db.add(warp)
    await db.flush()
    return warp


async def touch_warp(db: AsyncSession, warp_id: str, at: datetime) -> None:
    """Bump updated_at only (heartbeat liveness signal).

    Uses an atomic UPDATE so no other column is rewritten.
    """
    await db.execute(update(Warp).where(Warp.id == warp_id).values(updated_at=at))


async def get_sweep_candidates(db: AsyncSession) -> List[Warp]:
    """Warps the reconciliation sweep must look at.

    Non-deleted warps with a job ID that are either active (or have no
    status yet) or terminal without remote confirmation.
    """
    result = await db.execute(
        select(Warp)
        .where(
            Warp.deleted_at.is_(None),
            Warp.job_id.is_not(None),
            or_(
                Warp.job_status.is_(None),
                Warp.job_status.in_(list(JobStatus.active())),
                and_(
                    Warp.job_status.in_(list(JobStatus.terminal())),
                    Warp.runpod_confirmed_terminal.is_(False),
                ),
            ),
        )
        .order_by(Warp.created_at.asc())
    )
    return list(result.scalars().all())


async def get_running_legacy_pods(db: AsyncSession) -> List[Warp]:
    """Pre-serverless warps whose pod is still marked running."""
    result = await db.execute(
        select(Warp)
        .where(
            Warp.deleted_at.is_(None),
            Warp.job_id.is_(None),
            Warp.pod_id.is_not(None),
            Warp.pod_status == PodStatus.RUNNING.value,
        )
        .order_by(Warp.created_at.asc())
    )
    return list(result.scalars().all())
