"""Database models."""
from .resource import Resource
from .issue import Issue, IssueType
from .alert import Alert, AlertType
from .scan_result import ScanResult
from .series_data import SeriesData
from .log_entry import LogEntry

__all__ = ["Resource", "Issue", "IssueType", "Alert", "AlertType", "ScanResult", "SeriesData", "LogEntry"]
