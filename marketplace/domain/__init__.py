from marketplace.domain.fulfillment import FulfillmentChange, FulfillmentLine, ShippingInfo
from marketplace.domain.order import MerchLine, Order, OrderHeader, TicketLine
from marketplace.domain.visibility import OrderView, ViewerContext
from marketplace.domain.wallet import WalletLedgerEntry, WalletSummary

__all__ = [
    "FulfillmentChange",
    "FulfillmentLine",
    "MerchLine",
    "Order",
    "OrderHeader",
    "OrderView",
    "ShippingInfo",
    "TicketLine",
    "ViewerContext",
    "WalletLedgerEntry",
    "WalletSummary",
]
