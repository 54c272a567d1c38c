"""Retention sweeper - purges data older than six months.

Runs daily. Each category is its own delete-and-commit step, so a failure in
one step never stops the others:
- resources soft-deleted before the horizon, with their issues, alerts,
  scan results and series data
- issues resolved before the horizon, with their alerts
- warning alerts (no issue) created before the horizon
- scan results created before the horizon
- log rows created before the horizon
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Alert, Issue, LogEntry, Resource, ScanResult, SeriesData
from ..utils.clock import months_before, utcnow
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

RETENTION_MONTHS = 6


@dataclass
class SweepReport:
    """Rows removed per table, and the steps that failed."""
    resources: int = 0
    issues: int = 0
    alerts: int = 0
    scan_results: int = 0
    series: int = 0
    logs: int = 0
    failed_steps: List[str] = field(default_factory=list)

    def add(self, counts: Dict[str, int]):
        for name, count in counts.items():
            setattr(self, name, getattr(self, name) + count)


def _deleted(result) -> int:
    return max(result.rowcount or 0, 0)


class RetentionSweeper:
    """Deletes aged rows across all tables."""

    def __init__(self, session_factory: async_sessionmaker, retention_months: int = RETENTION_MONTHS):
        self.session_factory = session_factory
        self.retention_months = retention_months

    async def run(self, stop_event: Optional[asyncio.Event] = None, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        cutoff = months_before(now, self.retention_months)
        report = SweepReport()

        steps = [
            ("deleted resources", self._purge_deleted_resources),
            ("resolved issues", self._purge_resolved_issues),
            ("warning alerts", self._purge_orphan_alerts),
            ("log entries", self._purge_logs),
            ("scan results", self._purge_scan_results),
        ]
        for name, step in steps:
            if stop_event is not None and stop_event.is_set():
                break
            try:
                async with self.session_factory() as session:
                    counts = await step(session, cutoff)
                    await retry_on_lock(session.commit)
                report.add(counts)
            except Exception as e:
                logger.critical(f"Failed to purge {name}: {e}")
                report.failed_steps.append(name)

        logger.info(
            f"Removed {report.resources} deleted resources, {report.issues} resolved issues, "
            f"{report.alerts} alerts, {report.scan_results} scan results, {report.series} series "
            f"and {report.logs} log entries from the db."
        )
        return report

    async def _purge_deleted_resources(self, session: AsyncSession, cutoff: datetime) -> Dict[str, int]:
        resource_ids = select(Resource.id).where(Resource.deleted.is_not(None), Resource.deleted < cutoff)

        alerts = await session.execute(
            delete(Alert).where(Alert.resource_id.in_(resource_ids)).execution_options(synchronize_session=False)
        )
        issues = await session.execute(
            delete(Issue).where(Issue.resource_id.in_(resource_ids)).execution_options(synchronize_session=False)
        )
        scan_results = await session.execute(
            delete(ScanResult)
            .where(ScanResult.resource_id.in_(resource_ids))
            .execution_options(synchronize_session=False)
        )
        series = await session.execute(
            delete(SeriesData)
            .where(SeriesData.resource_id.in_(resource_ids))
            .execution_options(synchronize_session=False)
        )
        resources = await session.execute(
            delete(Resource)
            .where(Resource.deleted.is_not(None), Resource.deleted < cutoff)
            .execution_options(synchronize_session=False)
        )
        return {
            "resources": _deleted(resources),
            "issues": _deleted(issues),
            "alerts": _deleted(alerts),
            "scan_results": _deleted(scan_results),
            "series": _deleted(series),
        }

    async def _purge_resolved_issues(self, session: AsyncSession, cutoff: datetime) -> Dict[str, int]:
        issue_ids = select(Issue.id).where(Issue.resolved.is_not(None), Issue.resolved < cutoff)

        alerts = await session.execute(
            delete(Alert).where(Alert.issue_id.in_(issue_ids)).execution_options(synchronize_session=False)
        )
        issues = await session.execute(
            delete(Issue)
            .where(Issue.resolved.is_not(None), Issue.resolved < cutoff)
            .execution_options(synchronize_session=False)
        )
        return {"issues": _deleted(issues), "alerts": _deleted(alerts)}

    async def _purge_orphan_alerts(self, session: AsyncSession, cutoff: datetime) -> Dict[str, int]:
        alerts = await session.execute(
            delete(Alert)
            .where(Alert.issue_id.is_(None), Alert.created < cutoff)
            .execution_options(synchronize_session=False)
        )
        return {"alerts": _deleted(alerts)}

    async def _purge_logs(self, session: AsyncSession, cutoff: datetime) -> Dict[str, int]:
        logs = await session.execute(
            delete(LogEntry).where(LogEntry.created < cutoff).execution_options(synchronize_session=False)
        )
        return {"logs": _deleted(logs)}

    async def _purge_scan_results(self, session: AsyncSession, cutoff: datetime) -> Dict[str, int]:
        scan_results = await session.execute(
            delete(ScanResult).where(ScanResult.created < cutoff).execution_options(synchronize_session=False)
        )
        return {"scan_results": _deleted(scan_results)}
