import os
import sys
from loguru import logger
from livemap.core.config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{line} | {message}"

# modules whose output also goes to realtime.log
REALTIME_MODULES = (
    "livemap.services.merge_sink",
    "livemap.services.supabase_backend",
)


def _is_realtime(record) -> bool:
    return record["name"].startswith(REALTIME_MODULES)


def setup_logging() -> None:
    logger.remove()

    # SQL runs in worker threads, so every sink is enqueued
    logger.add(sys.stdout, level=LOG_LEVEL, format=LOG_FORMAT, enqueue=True)

    os.makedirs(LOG_DIR, exist_ok=True)

    logger.add(
        os.path.join(LOG_DIR, "app.log"),
        rotation="10 MB",
        retention="14 days",
        level=LOG_LEVEL,
        format=LOG_FORMAT,
        enqueue=True,
    )

    logger.add(
        os.path.join(LOG_DIR, "realtime.log"),
        rotation="10 MB",
        retention="3 days",
        level="DEBUG",
        format=LOG_FORMAT,
        filter=_is_realtime,
        enqueue=True,
    )

    logger.info(f"Logging initialized (level={LOG_LEVEL}, dir={LOG_DIR})")
