"""Series compactor - condenses recent scan history into one series per resource.

Runs every 5 minutes. For each resource that is not deleted, the scan results
of the last 2 hours become series points. If that window holds fewer than 120
points, the 120 most recent results are used instead. The stored series is only
rewritten when its serialized form changed. Raw history is left alone; the
retention sweeper prunes it.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Resource, ScanResult, SeriesData
from ..utils.clock import utcnow
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

SERIES_WINDOW = timedelta(hours=2)
SERIES_MIN_POINTS = 120


@dataclass(frozen=True)
class SeriesPoint:
    """One compacted sample: when, how fast, and what state."""
    timestamp: datetime
    response_time_ms: Optional[int]
    status: str

    def to_dict(self) -> dict:
        return {"dt": self.timestamp.isoformat(), "rt": self.response_time_ms, "st": self.status}

    @classmethod
    def from_dict(cls, data: dict) -> "SeriesPoint":
        return cls(
            timestamp=datetime.fromisoformat(data["dt"]),
            response_time_ms=data.get("rt"),
            status=data.get("st") or "Ok",
        )


def build_series(history: Iterable[ScanResult]) -> List[SeriesPoint]:
    """Map scan results to series points, newest first, one point per timestamp."""
    seen = set()
    points = []
    for scan_result in sorted(history, key=lambda r: r.created, reverse=True):
        if scan_result.created in seen:
            continue
        seen.add(scan_result.created)
        points.append(SeriesPoint(
            timestamp=scan_result.created,
            response_time_ms=scan_result.response_time_ms,
            status=scan_result.status_label,
        ))
    return points


def serialize_series(points: List[SeriesPoint]) -> str:
    return json.dumps([p.to_dict() for p in points], separators=(",", ":"))


def load_series(points_json: Optional[str]) -> List[SeriesPoint]:
    """Parse a stored series. Malformed data yields an empty series."""
    try:
        data = json.loads(points_json or "[]")
        return [SeriesPoint.from_dict(item) for item in data]
    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Discarding malformed series data: {e}")
        return []


class SeriesCompactor:
    """Builds the compact series for every live resource."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def run(self, stop_event: Optional[asyncio.Event] = None, now: Optional[datetime] = None) -> int:
        """Compact all resources. Returns the number of series written."""
        now = now or utcnow()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Resource.id).where(Resource.deleted.is_(None)).order_by(Resource.id)
                )
                resource_ids = list(result.scalars().all())
        except Exception as e:
            logger.critical(f"Unable to list resources for series compaction: {e}")
            return 0

        written = 0
        for resource_id in resource_ids:
            if stop_event is not None and stop_event.is_set():
                break
            try:
                if await self.compact_resource(resource_id, now):
                    written += 1
            except Exception as e:
                logger.error(f"Error building series for resource {resource_id}: {e}")

        logger.info(f"Series compaction complete: {written}/{len(resource_ids)} series updated")
        return written

    async def compact_resource(self, resource_id: int, now: Optional[datetime] = None) -> bool:
        """Rebuild one resource's series. Returns True if it was written."""
        now = now or utcnow()
        async with self.session_factory() as session:
            history = await self._fetch_history(session, resource_id, now)
            if not history:
                return False

            serialized = serialize_series(build_series(history))

            result = await session.execute(
                select(SeriesData).where(SeriesData.resource_id == resource_id)
            )
            series = result.scalar_one_or_none()
            if series is not None and series.points_json == serialized:
                return False

            if series is None:
                series = SeriesData(resource_id=resource_id, created=now)
                session.add(series)
            series.points_json = serialized
            series.updated = now
            await retry_on_lock(session.commit)
            logger.debug(f"Series for resource {resource_id} rebuilt with {len(history)} points")
            return True

    async def _fetch_history(self, session: AsyncSession, resource_id: int, now: datetime) -> List[ScanResult]:
        result = await session.execute(
            select(ScanResult)
            .where(ScanResult.resource_id == resource_id, ScanResult.created >= now - SERIES_WINDOW)
            .order_by(ScanResult.created.desc())
        )
        history = list(result.scalars().all())
        if len(history) >= SERIES_MIN_POINTS:
            return history

        # Sparse window, fall back to the latest points
        result = await session.execute(
            select(ScanResult)
            .where(ScanResult.resource_id == resource_id)
            .order_by(ScanResult.created.desc())
            .limit(SERIES_MIN_POINTS)
        )
        return list(result.scalars().all())
