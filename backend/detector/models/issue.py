"""Issue model - open or resolved health problems per resource."""
import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from ..database import Base
from ..utils.clock import utcnow


class IssueType(str, enum.Enum):
    """Classified failure modes; one open issue per resource and type."""

    SSL_ERROR = "ssl_error"
    INVALID_HTTP_STATUS_CODE = "invalid_http_status_code"
    INVALID_CONNECTING_IP = "invalid_connecting_ip"
    UNABLE_TO_RESOLVE_IP = "unable_to_resolve_ip"
    UNHANDLED_EXCEPTION = "unhandled_exception"


class Issue(Base):
    """A classified failure for one resource. resolved is NULL while open."""

    __tablename__ = "issues"
    __table_args__ = (
        Index("ix_issues_open_lookup", "resource_id", "issue_type", "resolved"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow)
    updated = Column(DateTime, default=utcnow)
    resolved = Column(DateTime, nullable=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False)
    url = Column(String(1024), nullable=True)
    issue_type = Column(String(32), nullable=False)
    message = Column(Text, nullable=True)
    ssl_error_code = Column(String(32), nullable=True)
    ssl_error_message = Column(String(128), nullable=True)
    http_status_code = Column(Integer, nullable=True)
    connecting_ip = Column(String(128), nullable=True)
