from sqlalchemy import Column, String, Float, DateTime, Index
from sqlalchemy.sql import func

from livemap.core.db import Base


class Location(Base):
    __tablename__ = "locations"

    user_id = Column(String, primary_key=True, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_locations_lat_lng", "lat", "lng"),
    )
