"""Status overview schemas."""
from typing import List, Optional
from pydantic import BaseModel


class ResourceSummary(BaseModel):
    """Summary of a resource for the overview."""
    id: int
    identifier: str
    url: str
    status: Optional[str] = None  # Ok, Error, or None before the first scan
    connecting_ip: Optional[str] = None
    last_scan: Optional[str] = None
    next_scan: Optional[str] = None
    open_issues: int = 0


class StatusOverview(BaseModel):
    """Overview of all live resources."""
    total_resources: int
    resources_ok: int
    resources_error: int
    resources_unscanned: int
    open_issues: int
    resources: List[ResourceSummary]


class SeriesPointOut(BaseModel):
    """One compact series sample."""
    timestamp: str
    response_time_ms: Optional[int] = None
    status: str


class ResourceSeries(BaseModel):
    resource_id: int
    updated: Optional[str] = None
    points: List[SeriesPointOut]
