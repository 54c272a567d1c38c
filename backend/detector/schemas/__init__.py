"""Pydantic schemas for the status API."""
from .status import ResourceSeries, ResourceSummary, SeriesPointOut, StatusOverview

__all__ = ["ResourceSeries", "ResourceSummary", "SeriesPointOut", "StatusOverview"]
