"""Health check endpoint; checks the database only when marks are stored there."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from securitybot.core.bot_config import get_bot_config
from securitybot.core.config import settings
from securitybot.core.database import check_db_connected, get_db
from securitybot.core.errors import ConfigError
from securitybot.schemas.health import HealthResponse

router = APIRouter()


@router.get("/", response_model=HealthResponse)
def get_health(db: Annotated[Session, Depends(get_db)]) -> HealthResponse:
    """
    Return service health status and, for database storage, database connectivity.
    Used by load balancers and monitoring.
    """
    try:
        storage = get_bot_config().false_positives.storage
    except ConfigError:
        return HealthResponse(status="ok", environment=settings.APP_ENV)

    db_status = None
    if storage == "database":
        db_status = "connected" if check_db_connected(db) else "disconnected"

    return HealthResponse(
        status="ok",
        environment=settings.APP_ENV,
        storage=storage,
        database=db_status,
    )
