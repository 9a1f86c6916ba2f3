from loguru import logger
from livemap.core.db import engine, Base

# Import all models so SQLAlchemy registers them
from livemap.models.friendship import Friendship
from livemap.models.location import Location
from livemap.models.profile import Profile

def init_db(bind=None):
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")
