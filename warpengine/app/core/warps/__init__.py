############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Warp lifecycle package
#
############################################################

"""Warp lifecycle engine and reconciliation sweeper.

Import from the submodules directly (engine, sweeper, errors); this
package stays import-light so billing can depend on the error classes.
"""
