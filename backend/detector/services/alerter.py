"""Alerter service - records alerts for issue transitions and delivers them.

An alert is identified by (resource_id, type, url, message). If the same tuple
was already recorded within the dedup window, only its `updated` timestamp
moves; nothing new is inserted or delivered. A new alert is committed before
delivery, so a failed delivery still leaves the record behind.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Alert, AlertType, Issue, Resource
from ..utils.clock import utcnow
from ..utils.db_utils import retry_on_lock
from . import event_log
from .notifier import SlackNotifier

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class IssueSnapshot:
    """The issue fields an alert is built from."""
    resource_id: int
    issue_id: int
    url: Optional[str]
    message: Optional[str]

    @classmethod
    def of(cls, issue: Issue, resource_id: int, resource_url: Optional[str]) -> "IssueSnapshot":
        return cls(
            resource_id=resource_id,
            issue_id=issue.id,
            url=issue.url or resource_url,
            message=issue.message,
        )


class AlerterService:
    """Creates Alert rows and hands them to the notifier."""

    def __init__(self, notifier: SlackNotifier, dedup_window: timedelta = DEDUP_WINDOW):
        self.notifier = notifier
        self.dedup_window = dedup_window

    async def emit(
        self,
        session: AsyncSession,
        resource: Resource,
        issue: Issue,
        alert_type: AlertType,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """Emit an alert for an issue transition.

        positive for a resolved issue, negative for an opened or refreshed one.
        """
        try:
            snapshot = IssueSnapshot.of(issue, resource.id, resource.url)
        except SQLAlchemyError as e:
            logger.error(f"Unable to read issue for alert on resource {resource}: {e}")
            return None
        return await self.emit_snapshot(session, snapshot, alert_type, now)

    async def emit_snapshot(
        self,
        session: AsyncSession,
        snapshot: IssueSnapshot,
        alert_type: AlertType,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """Emit an alert from issue values captured earlier.

        Unaffected by a rollback that expired the issue in between.
        """
        return await self._emit(
            session, snapshot.resource_id, snapshot.issue_id, alert_type, snapshot.url, snapshot.message, now
        )

    async def emit_warning(
        self,
        session: AsyncSession,
        resource: Resource,
        message: str,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """Emit a warning that is not backed by an issue."""
        return await self._emit(session, resource.id, None, AlertType.WARNING, resource.url, message, now)

    async def find_recent(
        self,
        session: AsyncSession,
        resource_id: int,
        alert_type: AlertType,
        url: Optional[str],
        message: Optional[str],
        now: datetime,
    ) -> Optional[Alert]:
        """Most recent alert with the same tuple inside the dedup window."""
        result = await session.execute(
            select(Alert)
            .where(
                Alert.resource_id == resource_id,
                Alert.type == alert_type.value,
                Alert.url == url,
                Alert.message == message,
                Alert.created >= now - self.dedup_window,
            )
            .order_by(Alert.created.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _emit(
        self,
        session: AsyncSession,
        resource_id: int,
        issue_id: Optional[int],
        alert_type: AlertType,
        url: Optional[str],
        message: Optional[str],
        now: Optional[datetime],
    ) -> Optional[Alert]:
        now = now or utcnow()

        try:
            existing = await self.find_recent(session, resource_id, alert_type, url, message, now)
            if existing is not None:
                existing.updated = now
                await retry_on_lock(session.commit)
                logger.debug(f"Alert {existing.id} repeated within dedup window, not re-sent")
                return existing

            alert = Alert(
                created=now,
                updated=now,
                resource_id=resource_id,
                issue_id=issue_id,
                type=alert_type.value,
                url=url,
                message=message,
            )
            session.add(alert)
            await retry_on_lock(session.commit)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record {alert_type.value} alert for resource {resource_id}: {e}")
            await session.rollback()
            return None

        if await self.notifier.post(alert.type, url, message):
            try:
                alert.posted_to_slack = utcnow()
                await retry_on_lock(session.commit)
            except SQLAlchemyError as e:
                logger.error(f"Failed to mark alert {alert.id} as delivered: {e}")
                await session.rollback()
        else:
            logger.warning(f"Alert {alert.id} recorded but not delivered")
            try:
                event_log.record_event(
                    session, event_log.CRITICAL, f"Unable to post alert {alert.id} to Slack", "alert", alert.id
                )
                await retry_on_lock(session.commit)
            except SQLAlchemyError as e:
                logger.error(f"Failed to log undelivered alert {alert.id}: {e}")
                await session.rollback()

        return alert
