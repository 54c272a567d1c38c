"""SeriesData model - compact rolling time series per resource."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text

from ..database import Base
from ..utils.clock import utcnow


class SeriesData(Base):
    """Serialized list of series points, one row per resource."""

    __tablename__ = "series_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow)
    updated = Column(DateTime, default=utcnow)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False, unique=True)
    points_json = Column(Text, nullable=False, default="[]")
