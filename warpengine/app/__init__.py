############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Application package initialization
#
############################################################

"""WarpEngine Application Package."""

from warpengine import __version__

__all__ = ["__version__"]
