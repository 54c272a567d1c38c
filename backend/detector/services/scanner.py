"""Scanner service - the probe loop.

Each cycle selects resources that are not deleted and due for a scan, then
probes them one after another. Sequential scanning keeps outbound connections
to one at a time and avoids interleaved writes to a resource's scan fields.

Timing:
- query failure or nothing due: wait 30s
- after a batch: wait 10s
- healthy resource: next scan in 60s, status "Ok"
- failing resource: next scan in 10s, status "Error"
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Resource, ScanResult
from ..utils.clock import utcnow, wait_or_stop
from ..utils.db_utils import retry_on_lock
from . import event_log
from .alerter import AlerterService
from .ledger import IssueLedger
from .probe import Failed, Healthy, Outcome, ProbeService, ShutdownRequested

logger = logging.getLogger(__name__)

HEALTHY_SCAN_INTERVAL = timedelta(seconds=60)
FAILED_SCAN_INTERVAL = timedelta(seconds=10)

ERROR_DELAY_SECONDS = 30
IDLE_DELAY_SECONDS = 30
CYCLE_DELAY_SECONDS = 10

STATUS_OK = "Ok"
STATUS_ERROR = "Error"


def next_scan_interval(outcome: Outcome) -> timedelta:
    """Failing resources are re-checked six times as often as healthy ones."""
    return HEALTHY_SCAN_INTERVAL if isinstance(outcome, Healthy) else FAILED_SCAN_INTERVAL


class ScannerService:
    """Drives probe cycles over due resources."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        probe: ProbeService,
        ledger: IssueLedger,
        alerter: AlerterService,
        ssl_warn_days: int = 14,
    ):
        self.session_factory = session_factory
        self.probe = probe
        self.ledger = ledger
        self.alerter = alerter
        self.ssl_warn_days = ssl_warn_days

    async def run(self, stop_event: asyncio.Event):
        """Loop until the stop event is set."""
        logger.info("Scanner started")
        while not stop_event.is_set():
            delay = await self.run_once(stop_event)
            await wait_or_stop(stop_event, delay)
        logger.info("Scanner stopped")

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> float:
        """Run one cycle. Returns the delay before the next one."""
        try:
            resource_ids = await self.get_due_resource_ids()
        except Exception as e:
            logger.critical(f"Unable to fetch resources due for scan: {e}")
            return ERROR_DELAY_SECONDS

        if not resource_ids:
            return IDLE_DELAY_SECONDS

        for resource_id in resource_ids:
            if stop_event is not None and stop_event.is_set():
                break
            try:
                await self.scan_resource(resource_id, stop_event)
            except Exception as e:
                logger.exception(f"Error scanning resource {resource_id}: {e}")

        logger.info("Scans complete. Waiting for next cycle..")
        return CYCLE_DELAY_SECONDS

    async def get_due_resource_ids(self, now: Optional[datetime] = None) -> List[int]:
        """IDs of resources that are not deleted and have no or a past next_scan."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Resource.id)
                .where(
                    Resource.deleted.is_(None),
                    or_(Resource.next_scan.is_(None), Resource.next_scan <= now),
                )
                .order_by(Resource.id)
            )
            return list(result.scalars().all())

    async def scan_resource(
        self,
        resource_id: int,
        stop_event: Optional[asyncio.Event] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Outcome]:
        """Probe one resource and apply the outcome in a single session.

        Returns None if the resource is gone or shutdown interrupted the probe.
        """
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(Resource).where(Resource.id == resource_id, Resource.deleted.is_(None))
                )
                resource = result.scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.critical(f"Unable to load resource {resource_id}: {e}")
                return None

            if resource is None:
                logger.warning(f"Resource not found: {resource_id}")
                return None

            identifier = resource.identifier
            logger.info(f"[{identifier}] [SCAN] {resource.url}")

            async def pin_connecting_ip(connecting_ip: str):
                try:
                    await retry_on_lock(session.commit)
                    logger.info(f"[{identifier}] Pinned connecting IP {connecting_ip}")
                except SQLAlchemyError as e:
                    logger.error(f"[{identifier}] Unable to pin connecting IP {connecting_ip}: {e}")
                    await session.rollback()
                    await self._ensure_loaded(session, resource)
                    # Retried with the next commit of this scan
                    resource.connecting_ip = connecting_ip

            try:
                outcome = await self.probe.probe(resource, on_pin=pin_connecting_ip, stop_event=stop_event)
            except ShutdownRequested:
                logger.info(f"[{identifier}] Scan abandoned, shutting down")
                return None

            now = now or utcnow()

            if isinstance(outcome, Failed):
                logger.critical(f"[{identifier}] {outcome.message}")
                event_log.record_event(session, event_log.CRITICAL, outcome.message, "resource", resource_id)
            else:
                event_log.record_event(session, event_log.INFO, "Everything is ok.", "resource", resource_id)

            await self._record_scan_result(session, resource, outcome, now)
            await self._ensure_loaded(session, resource)
            await self.ledger.record(session, resource, outcome, now)
            await self._ensure_loaded(session, resource)

            if isinstance(outcome, Healthy):
                await self._warn_on_certificate_expiry(session, resource, outcome, now)

            await self._schedule_next_scan(session, resource, outcome, now)
            return outcome

    async def _record_scan_result(
        self,
        session: AsyncSession,
        resource: Resource,
        outcome: Outcome,
        now: datetime,
    ):
        """Write the history point the series compactor reads."""
        if isinstance(outcome, Healthy):
            scan_result = ScanResult(
                created=now,
                resource_id=resource.id,
                url=resource.url,
                response_time_ms=outcome.response_time_ms,
                status_code=outcome.status_code,
                connecting_ip=outcome.connecting_ip,
            )
        else:
            details = outcome.details
            scan_result = ScanResult(
                created=now,
                resource_id=resource.id,
                url=resource.url,
                response_time_ms=details.get("response_time_ms"),
                status_code=details.get("status_code"),
                ssl_error_code=details.get("ssl_error_code"),
                ssl_error_message=details.get("ssl_error_message"),
                connecting_ip=details.get("connecting_ip"),
                issue_type=outcome.kind.value,
                exception_message=outcome.message,
            )

        try:
            session.add(scan_result)
            await retry_on_lock(session.commit)
        except SQLAlchemyError as e:
            logger.error(f"Unable to save scan result: {e}")
            await session.rollback()

    async def _warn_on_certificate_expiry(
        self,
        session: AsyncSession,
        resource: Resource,
        outcome: Healthy,
        now: datetime,
    ):
        days = outcome.certificate_days_remaining(now)
        if days is None or days > self.ssl_warn_days:
            return
        message = "Certificate expired" if days < 0 else f"Certificate expires in {days} days"
        logger.warning(f"[{resource.identifier}] {message}")
        event_log.record_event(session, event_log.WARNING, message, "resource", resource.id)
        await self.alerter.emit_warning(session, resource, message, now)

    async def _schedule_next_scan(
        self,
        session: AsyncSession,
        resource: Resource,
        outcome: Outcome,
        now: datetime,
    ):
        resource.last_scan = now
        resource.next_scan = now + next_scan_interval(outcome)
        resource.status = STATUS_OK if isinstance(outcome, Healthy) else STATUS_ERROR
        try:
            await retry_on_lock(session.commit)
        except SQLAlchemyError as e:
            logger.error(f"Unable to update scan timing: {e}")
            await session.rollback()

    async def _ensure_loaded(self, session: AsyncSession, resource: Resource):
        """Reload the resource if a rolled-back write expired it."""
        if not inspect(resource).expired:
            return
        try:
            await session.refresh(resource)
        except SQLAlchemyError as e:
            logger.error(f"Unable to reload resource after rollback: {e}")
