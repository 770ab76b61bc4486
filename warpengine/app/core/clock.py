############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# clock.py: Injectable UTC clock and datetime normalisation
#
############################################################

"""UTC clock helpers shared by the lifecycle engine and sweeper."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware (SQLite returns naive datetimes)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
