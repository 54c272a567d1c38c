"""Status API - read-only view of resources, open issues and series."""
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Issue, Resource, SeriesData
from ..schemas.status import ResourceSeries, ResourceSummary, SeriesPointOut, StatusOverview
from ..services.compactor import load_series

router = APIRouter(prefix="/api/status", tags=["status"])


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get a database session from the app's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


def _iso(value):
    return value.isoformat() if value else None


@router.get("/overview", response_model=StatusOverview)
async def get_status_overview(db: AsyncSession = Depends(get_db)):
    """Get overview data for all live resources."""
    result = await db.execute(
        select(Resource).where(Resource.deleted.is_(None)).order_by(Resource.id)
    )
    resources = result.scalars().all()

    # Open issue count per resource
    counts_result = await db.execute(
        select(Issue.resource_id, func.count(Issue.id))
        .where(Issue.resolved.is_(None))
        .group_by(Issue.resource_id)
    )
    open_counts = dict(counts_result.all())

    summaries = []
    counts = {"Ok": 0, "Error": 0, None: 0}
    for resource in resources:
        counts[resource.status if resource.status in counts else None] += 1
        summaries.append(ResourceSummary(
            id=resource.id,
            identifier=resource.identifier,
            url=resource.url,
            status=resource.status,
            connecting_ip=resource.connecting_ip,
            last_scan=_iso(resource.last_scan),
            next_scan=_iso(resource.next_scan),
            open_issues=open_counts.get(resource.id, 0),
        ))

    return StatusOverview(
        total_resources=len(resources),
        resources_ok=counts["Ok"],
        resources_error=counts["Error"],
        resources_unscanned=counts[None],
        open_issues=sum(s.open_issues for s in summaries),
        resources=summaries,
    )


@router.get("/resources/{resource_id}/series", response_model=ResourceSeries)
async def get_resource_series(resource_id: int, db: AsyncSession = Depends(get_db)):
    """Get the compact time series for a resource."""
    resource = await db.get(Resource, resource_id)
    if resource is None or resource.deleted is not None:
        raise HTTPException(status_code=404, detail="Resource not found")

    result = await db.execute(select(SeriesData).where(SeriesData.resource_id == resource_id))
    series = result.scalar_one_or_none()
    if series is None:
        return ResourceSeries(resource_id=resource_id, points=[])

    return ResourceSeries(
        resource_id=resource_id,
        updated=_iso(series.updated),
        points=[
            SeriesPointOut(
                timestamp=point.timestamp.isoformat(),
                response_time_ms=point.response_time_ms,
                status=point.status,
            )
            for point in load_series(series.points_json)
        ],
    )
