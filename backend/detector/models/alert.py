"""Alert model - notifications derived from issue transitions."""
import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from ..database import Base
from ..utils.clock import utcnow


class AlertType(str, enum.Enum):
    POSITIVE = "positive"  # Issue resolved
    NEGATIVE = "negative"  # Issue opened or refreshed
    WARNING = "warning"  # Non-fatal anomaly, no issue attached


class Alert(Base):
    """Record of an alert; posted_to_slack is set once delivery succeeded."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_dedup", "resource_id", "type", "created"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow)
    updated = Column(DateTime, default=utcnow)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False)
    issue_id = Column(Integer, ForeignKey("issues.id"), nullable=True)
    type = Column(String(16), nullable=False)
    url = Column(String(1024), nullable=True)
    message = Column(Text, nullable=True)
    posted_to_slack = Column(DateTime, nullable=True)
