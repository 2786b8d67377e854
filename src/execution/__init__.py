"""
Execution layer: order lifecycle, the API governor and the venue client.

- OrderLedger: sole owner of order state, idempotent fill application
- ApiGovernor: priority queues, adaptive rate limits, circuit breaking
- VenueClient / VenueApi: REST transport and typed venue operations

RestPoller and ReconciliationEngine live here too but are imported from their
modules directly; they depend on the market data package.
"""

from src.execution.order_ledger import Order, OrderLedger, OrderStatus
from src.execution.api_governor import ApiGovernor, GovernorConfig, Priority
from src.execution.venue_client import VenueClient, VenueRequest, VenueResponse
from src.execution.venue_api import Balance, Ticker, VenueApi, VenueOrder

__all__ = [
    "Order",
    "OrderLedger",
    "OrderStatus",
    "ApiGovernor",
    "GovernorConfig",
    "Priority",
    "VenueClient",
    "VenueRequest",
    "VenueResponse",
    "Balance",
    "Ticker",
    "VenueApi",
    "VenueOrder",
]
