############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Root package initialization and version definition
#
############################################################

"""WarpEngine - serverless GPU session broker."""

__version__ = "0.4.0"
