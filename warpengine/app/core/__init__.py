############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Core package initialization
#
############################################################

"""Core warp lifecycle, billing and remote job components."""
