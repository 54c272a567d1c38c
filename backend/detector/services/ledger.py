"""Issue ledger - open, refresh and resolve issues from probe outcomes.

Per (resource, issue type) there is at most one open issue:
- Failed with a type that has no open issue: a new issue is opened.
- Failed with a type that already has an open issue: only `updated` moves.
- Healthy: every open issue of the resource is resolved, whatever its type.

Every affected issue is passed to the alerter exactly once; the alerter's
dedup window decides whether that turns into a new notification.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AlertType, Issue, Resource
from ..utils.clock import utcnow
from ..utils.db_utils import retry_on_lock
from .alerter import AlerterService, IssueSnapshot
from .probe import Failed, Healthy, Outcome

logger = logging.getLogger(__name__)

OPENED = "opened"
REFRESHED = "refreshed"
RESOLVED = "resolved"


@dataclass
class IssueTransition:
    """One issue that changed state during a scan."""
    issue: Issue
    transition: str  # opened, refreshed, resolved


class IssueLedger:
    """Owns the issue lifecycle."""

    def __init__(self, alerter: AlerterService):
        self.alerter = alerter

    async def record(
        self,
        session: AsyncSession,
        resource: Resource,
        outcome: Outcome,
        now: Optional[datetime] = None,
    ) -> List[IssueTransition]:
        """Apply a probe outcome to the resource's issues."""
        now = now or utcnow()
        if isinstance(outcome, Healthy):
            return await self.resolve_all(session, resource, now)
        transition = await self.open_or_refresh(session, resource, outcome, now)
        return [transition] if transition else []

    async def get_open_issues(self, session: AsyncSession, resource_id: int) -> List[Issue]:
        result = await session.execute(
            select(Issue)
            .where(Issue.resource_id == resource_id, Issue.resolved.is_(None))
            .order_by(Issue.created)
        )
        return list(result.scalars().all())

    async def resolve_all(
        self,
        session: AsyncSession,
        resource: Resource,
        now: datetime,
    ) -> List[IssueTransition]:
        """Resolve every open issue of a healthy resource.

        No open issues means no writes at all.
        """
        resource_id, identifier, url = resource.id, resource.identifier, resource.url
        try:
            issues = await self.get_open_issues(session, resource_id)
            if not issues:
                return []
            for issue in issues:
                issue.updated = now
                issue.resolved = now
            await retry_on_lock(session.commit)
            # Captured before any alert commit can fail and expire the issues
            snapshots = [IssueSnapshot.of(issue, resource_id, url) for issue in issues]
            resolved_types = [issue.issue_type for issue in issues]
        except SQLAlchemyError as e:
            logger.error(f"Failed to resolve issues for resource {resource_id}: {e}")
            await session.rollback()
            return []

        logger.info(f"[{identifier}] Resolved {', '.join(resolved_types)}")
        for snapshot in snapshots:
            await self.alerter.emit_snapshot(session, snapshot, AlertType.POSITIVE, now)

        return [IssueTransition(issue, RESOLVED) for issue in issues]

    async def open_or_refresh(
        self,
        session: AsyncSession,
        resource: Resource,
        outcome: Failed,
        now: datetime,
    ) -> Optional[IssueTransition]:
        """Open a new issue for the failure type, or refresh the open one."""
        issue_type = outcome.kind.value
        resource_id, url = resource.id, resource.url
        try:
            result = await session.execute(
                select(Issue)
                .where(
                    Issue.resource_id == resource_id,
                    Issue.issue_type == issue_type,
                    Issue.resolved.is_(None),
                )
                .order_by(Issue.created)
                .limit(1)
            )
            issue = result.scalar_one_or_none()

            if issue is not None:
                issue.updated = now
                transition = REFRESHED
            else:
                details = outcome.details
                issue = Issue(
                    created=now,
                    updated=now,
                    resource_id=resource_id,
                    url=url,
                    issue_type=issue_type,
                    message=outcome.message,
                    ssl_error_code=details.get("ssl_error_code"),
                    ssl_error_message=details.get("ssl_error_message"),
                    http_status_code=details.get("status_code"),
                    connecting_ip=details.get("connecting_ip"),
                )
                session.add(issue)
                transition = OPENED

            await retry_on_lock(session.commit)
            snapshot = IssueSnapshot.of(issue, resource_id, url)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record {issue_type} issue for resource {resource_id}: {e}")
            await session.rollback()
            return None

        await self.alerter.emit_snapshot(session, snapshot, AlertType.NEGATIVE, now)
        return IssueTransition(issue, transition)
