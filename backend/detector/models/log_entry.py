"""LogEntry model - persisted operational log rows."""
from sqlalchemy import Column, DateTime, Integer, String, Text

from ..database import Base
from ..utils.clock import utcnow


class LogEntry(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow, index=True)
    level = Column(String(32), nullable=False)  # info, warning, critical
    message = Column(Text, nullable=True)
    reference_type = Column(String(32), nullable=True)  # resource, issue, alert
    reference_id = Column(Integer, nullable=True)
