############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Database package initialization and exports
#
############################################################

"""Database package for WarpEngine."""

from warpengine.app.db.base import Base
from warpengine.app.db.session import (
    get_async_db,
    get_engine,
    get_session_factory,
)

__all__ = [
    "Base",
    "get_async_db",
    "get_engine",
    "get_session_factory",
]
