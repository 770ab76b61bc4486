############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: RunPod client package exports
#
############################################################

"""RunPod remote job client."""

from warpengine.app.core.runpod.client import (
    RunpodClient,
    RunpodError,
    RunpodNotFoundError,
    RunpodTimeoutError,
)
from warpengine.app.core.runpod.models import JobHandle, JobStatusReport

__all__ = [
    "JobHandle",
    "JobStatusReport",
    "RunpodClient",
    "RunpodError",
    "RunpodNotFoundError",
    "RunpodTimeoutError",
]
