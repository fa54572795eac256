"""
Status and health check endpoints.

WHAT: Health monitoring for the database and the live trade engine
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoint calling database ping and engine stats
"""

from fastapi import APIRouter, Request

from ....core.database import ping_database
from ....core.config import settings
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Overall application health check.

    WHAT: Comprehensive health status including version
    WHY: Ops and monitoring tools need simple health endpoint
    HOW: Aggregate DB status and live trade stats with app metadata

    Returns:
        JSON with overall health status
    """
    db_status = ping_database(request.app.state.db_engine)
    db_available = db_status["available"]

    engine = request.app.state.live_trade_engine
    live_trade = engine.stats()

    return {
        "status": "healthy" if db_available else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": {
                "available": db_available,
                "error": db_status["error"]
            },
            "live_trade": live_trade
        }
    }
