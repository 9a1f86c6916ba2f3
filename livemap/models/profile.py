from sqlalchemy import Column, String

from livemap.core.db import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)

    username = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)

    # everyone | friends | nobody
    location_visibility = Column(String, nullable=False, default="everyone")
