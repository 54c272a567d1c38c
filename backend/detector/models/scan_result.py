"""ScanResult model - raw outcome of one probe."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from ..database import Base
from ..utils.clock import utcnow


class ScanResult(Base):
    """Probe history point. Compacted into series data, purged after the retention horizon."""

    __tablename__ = "scan_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow, index=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False, index=True)
    url = Column(String(1024), nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    status_code = Column(Integer, nullable=True)
    ssl_error_code = Column(String(32), nullable=True)
    ssl_error_message = Column(String(128), nullable=True)
    connecting_ip = Column(String(128), nullable=True)
    issue_type = Column(String(32), nullable=True)  # NULL = healthy
    exception_message = Column(Text, nullable=True)

    @property
    def status_label(self) -> str:
        return self.exception_message or "Ok"
