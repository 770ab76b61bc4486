############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# balance.py: Time balance estimation and finalization
#
############################################################

"""Pure time-balance arithmetic.

Estimation is read-only and may be fractional or negative. Finalization is
authoritative: the billed duration is rounded up to whole seconds and only
the part not yet billed for the warp is deducted.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from warpengine.app.core.clock import ensure_aware
from warpengine.app.core.warps.errors import BalanceFinalizationError


@dataclass(frozen=True)
class Settlement:
    """Outcome of finalizing one warp against a stored balance."""

    time_balance: int
    billed_seconds: int
    charged_seconds: int

    @property
    def changed(self) -> bool:
        return self.charged_seconds > 0


def billable_seconds(
    started_at: Optional[datetime],
    ended_at: Optional[datetime],
    now: datetime,
) -> float:
    """Seconds of billable run time, clamped at zero for clock skew."""
    if started_at is None:
        return 0.0
    end = ensure_aware(ended_at) or ensure_aware(now)
    return max(0.0, (end - ensure_aware(started_at)).total_seconds())


def estimate_time_balance(
    stored_balance: int,
    started_at: Optional[datetime],
    ended_at: Optional[datetime],
    now: datetime,
    already_billed: int = 0,
) -> float:
    """Non-authoritative remaining balance as of now."""
    if started_at is None:
        return float(stored_balance)
    elapsed = billable_seconds(started_at, ended_at, now)
    return stored_balance - max(0.0, elapsed - already_billed)


def finalize_time_balance(
    stored_balance: int,
    started_at: Optional[datetime],
    ended_at: Optional[datetime],
    already_billed: int = 0,
    warp_id: Optional[str] = None,
) -> Settlement:
    """Authoritative balance after a warp ended.

    Raises BalanceFinalizationError when either timestamp is missing.
    """
    if started_at is None or ended_at is None:
        raise BalanceFinalizationError(
            f"Warp {warp_id} has no start or end timestamp to finalize",
            warp_id=warp_id,
        )
    total = math.ceil(billable_seconds(started_at, ended_at, ended_at))
    charge = max(0, total - already_billed)
    return Settlement(
        time_balance=stored_balance - charge,
        billed_seconds=max(total, already_billed),
        charged_seconds=charge,
    )
