"""
Market data package: stream transport, message extractors and the ingestor.
"""

from src.market_data.extractors import (
    BalanceUpdate,
    OrderUpdate,
    PriceUpdate,
    normalize_message,
)
from src.market_data.transport import AiohttpStreamTransport, StreamTransport

__all__ = [
    "BalanceUpdate",
    "OrderUpdate",
    "PriceUpdate",
    "normalize_message",
    "AiohttpStreamTransport",
    "StreamTransport",
]
