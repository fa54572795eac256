"""
FastAPI dependencies.

WHAT: Hand lifespan-scoped components to route handlers
WHY: Components live on app.state, not in module globals
HOW: Small accessor functions used with Depends()
"""

from fastapi import Request

from ...services.negotiation_engine import LiveTradeEngine
from ...services.trade_history import TradeHistoryService


def get_live_trade_engine(request: Request) -> LiveTradeEngine:
    return request.app.state.live_trade_engine


def get_trade_history(request: Request) -> TradeHistoryService:
    return request.app.state.trade_history
