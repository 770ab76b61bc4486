############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Billing package exports
#
############################################################

"""Time-balance billing."""

from warpengine.app.core.billing.balance import (
    Settlement,
    billable_seconds,
    estimate_time_balance,
    finalize_time_balance,
)

__all__ = [
    "Settlement",
    "billable_seconds",
    "estimate_time_balance",
    "finalize_time_balance",
]
