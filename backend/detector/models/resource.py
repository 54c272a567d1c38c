"""Resource model - URLs being monitored."""
from sqlalchemy import Column, DateTime, Integer, String

from ..database import Base
from ..utils.clock import utcnow


class Resource(Base):
    """A monitored URL.

    Created and soft-deleted externally. The scanner owns connecting_ip,
    status, last_scan and next_scan.
    """

    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created = Column(DateTime, default=utcnow)
    updated = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted = Column(DateTime, nullable=True)  # Soft-delete marker
    identifier = Column(String(64), nullable=False)
    name = Column(String(64), nullable=True)
    url = Column(String(1024), nullable=False)
    connecting_ip = Column(String(128), nullable=True)  # Pinned on first resolution
    status = Column(String(32), nullable=True)  # Ok, Error
    last_scan = Column(DateTime, nullable=True)
    next_scan = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<Resource {self.identifier} {self.url}>"
