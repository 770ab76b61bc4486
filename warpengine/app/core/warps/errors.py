############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# errors.py: Warp lifecycle error taxonomy
#
############################################################

"""Errors raised by the warp lifecycle engine.

Each class maps to one failure category and carries the HTTP status the
session layer answers with.
"""

from typing import Any, Dict, Optional


class WarpError(Exception):
    """Base class for lifecycle errors."""

    status_code: int = 500
    code: str = "warp_error"

    def __init__(self, message: str, warp_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.warp_id = warp_id

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.warp_id:
            body["warpId"] = self.warp_id
        return body


class WarpValidationError(WarpError):
    status_code = 400
    code = "invalid_request"


class WarpAccessDeniedError(WarpError):
    status_code = 403
    code = "access_denied"


class WarpNotFoundError(WarpError):
    status_code = 404
    code = "not_found"


class WarpNotActiveError(WarpError):
    """Operation needs a running warp (e.g. heartbeat)."""

    status_code = 409
    code = "warp_not_active"


class InsufficientBalanceError(WarpError):
    """Balance exhausted during a heartbeat; the warp has been cancelled."""

    status_code = 402
    code = "insufficient_balance"

    def __init__(self, message: str, warp: Any = None, user: Any = None):
        super().__init__(message, warp_id=getattr(warp, "id", None))
        self.warp = warp
        self.user = user


class RemoteJobError(WarpError):
    """The remote job provider failed; no local state was changed."""

    status_code = 502
    code = "remote_provider_error"


class BalanceFinalizationError(WarpError):
    """Finalization attempted without both start and end timestamps.

    Indicates a caller bug, never a user-facing condition.
    """

    status_code = 500
    code = "balance_finalization_error"
