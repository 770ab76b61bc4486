############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# schemas.py: Response models and the entities envelope
#
############################################################

"""Pydantic response models.

Field names are exposed in camelCase; responses wrap records in the
``{"success": true, "entities": {...}}`` envelope.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from warpengine.app.db.models import JobStatus, User, Warp


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class WarpOut(_CamelModel):
    id: str
    created_by_id: str
    job_id: Optional[str] = None
    job_status: Optional[JobStatus] = None
    job_requested_at: Optional[datetime] = None
    job_started_at: Optional[datetime] = None
    job_ended_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    runpod_confirmed_terminal: bool = False
    pod_id: Optional[str] = None
    pod_status: Optional[str] = None
    pod_ready_at: Optional[datetime] = None
    pod_ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class UserOut(_CamelModel):
    id: str
    time_balance: int
    is_super_user: bool = False
    stripe_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Charge amount in cents")
    quantity: int = Field(default=1, ge=1)


def _dump(model: type, rows: Iterable[Any]) -> list:
    return [
        model.model_validate(row).model_dump(by_alias=True, mode="json")
        for row in rows
        if row is not None
    ]


def entities(
    warps: Iterable[Warp] = (),
    users: Iterable[User] = (),
    **extra: Any,
) -> Dict[str, Any]:
    """Build the standard success envelope."""
    body: Dict[str, Any] = {"success": True}
    body.update(extra)
    found: Dict[str, Any] = {"warps": _dump(WarpOut, warps)}
    user_rows = _dump(UserOut, users)
    if user_rows:
        found["users"] = user_rows
    body["entities"] = found
    return body
