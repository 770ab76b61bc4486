############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# models.py: Parsed RunPod job responses
#
############################################################

"""RunPod response data models."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class JobHandle:
    """Result of starting a serverless job."""

    id: Optional[str]
    status: Optional[str] = None


@dataclass
class JobStatusReport:
    """Point-in-time status of a serverless job.

    delay_seconds and execution_seconds are converted from the
    millisecond values RunPod reports.
    """

    job_id: str
    status: Optional[str]
    worker_id: Optional[str] = None
    delay_seconds: Optional[float] = None
    execution_seconds: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _ms_to_seconds(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value) / 1000.0)
    except (TypeError, ValueError):
        return None


def parse_job_status(job_id: str, data: Dict[str, Any]) -> JobStatusReport:
    """Build a JobStatusReport from a /status response body."""
    return JobStatusReport(
        job_id=data.get("id") or job_id,
        status=data.get("status"),
        worker_id=data.get("workerId"),
        delay_seconds=_ms_to_seconds(data.get("delayTime")),
        execution_seconds=_ms_to_seconds(data.get("executionTime")),
        raw=data,
    )
