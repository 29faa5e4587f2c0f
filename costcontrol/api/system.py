import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..config import settings
from ..core.version import get_version_info
from ..services.recalculation_queue import recalculation_queue

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health(db: Session = Depends(get_db)) -> Dict[str, Any]:
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "consistency_mode": settings.commitment_consistency_mode,
        "recalculation_queue": {
            "mode": recalculation_queue.mode,
            "running": recalculation_queue.running,
            "pending": recalculation_queue.pending_count,
            "completed": recalculation_queue.completed,
            "recent_failures": [
                {**failure.extra, "detail": failure.detail} for failure in recalculation_queue.failures
            ],
        },
    }


@router.get("/version")
def version() -> Dict[str, str]:
    return get_version_info()
