############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# models.py: SQLAlchemy ORM models for users and warps
#
############################################################

"""SQLAlchemy database models for WarpEngine."""

from datetime import datetime
from enum import Enum as PyEnum
from typing import FrozenSet, List, Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warpengine.app.db.base import Base, SoftDeleteMixin, TimestampMixin

_enum_values = lambda obj: [e.value for e in obj]


class JobStatus(str, PyEnum):
    """Serverless job status as reported by RunPod."""
    IN_QUEUE = "IN_QUEUE"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ENDED = "ENDED"

    @classmethod
    def active(cls) -> FrozenSet["JobStatus"]:
        return _ACTIVE_JOB_STATUSES

    @classmethod
    def terminal(cls) -> FrozenSet["JobStatus"]:
        return _TERMINAL_JOB_STATUSES

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["JobStatus"]:
        """Map a remote status string to a JobStatus, or None if unknown."""
        if value is None:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE_JOB_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_JOB_STATUSES


_ACTIVE_JOB_STATUSES = frozenset(
    {JobStatus.IN_QUEUE, JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.PAUSED}
)
_TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.ENDED}
)


class PodStatus(str, PyEnum):
    """Legacy persistent-pod status (pre-serverless warps)."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    ENDED = "ENDED"


class User(Base, TimestampMixin, SoftDeleteMixin):
    """Account keyed by the identity provider's user ID."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    # Seconds of prepaid compute; may be negative after finalization
    time_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_super_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    warps: Mapped[List["Warp"]] = relationship("Warp", back_populates="created_by")


class Warp(Base, TimestampMixin, SoftDeleteMixin):
    """One leased compute session backed by a remote job."""

    __tablename__ = "warps"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    created_by_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )

    # Serverless job model
    job_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    job_status: Mapped[Optional[JobStatus]] = mapped_column(
        Enum(
            JobStatus,
            values_callable=_enum_values,
            native_enum=False,
            length=20,
            name="jobstatus",
        ),
        nullable=True,
    )
    job_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    job_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    job_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    runpod_confirmed_terminal: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    # Whole seconds already deducted from the owner's balance for this warp
    billed_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Legacy persistent pod model
    pod_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    pod_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pod_ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pod_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pod_meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_by: Mapped["User"] = relationship("User", back_populates="warps")

    __table_args__ = (
        Index("ix_warps_owner_status", "created_by_id", "job_status"),
        Index("ix_warps_status_confirmed", "job_status", "runpod_confirmed_terminal"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.job_status is not None and self.job_status.is_terminal

    @property
    def is_legacy_pod(self) -> bool:
        return self.job_id is None and self.pod_id is not None
