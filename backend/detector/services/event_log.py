"""Persisted log rows, purged by the retention sweeper after six months."""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import LogEntry
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"


def record_event(
    session: AsyncSession,
    level: str,
    message: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
):
    """Stage a log row on the session; it is written with the next commit.

    Never raises.
    """
    try:
        session.add(LogEntry(
            created=utcnow(),
            level=level,
            message=message,
            reference_type=reference_type,
            reference_id=reference_id,
        ))
    except SQLAlchemyError as e:
        logger.error(f"Unable to stage log entry: {e}")
