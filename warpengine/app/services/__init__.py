############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: Services package exports
#
############################################################

"""Services for WarpEngine."""

from warpengine.app.services.notifications import EmailNotifier
from warpengine.app.services.payments import PaymentError, PaymentService

__all__ = ["EmailNotifier", "PaymentError", "PaymentService"]
