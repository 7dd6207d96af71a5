from loguru import logger

from .database import engine, Base
from .models import AIServiceConfig, Task, Log, GenerationJob  # noqa: F401  register tables


def init_db(bind=None):
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created.")


if __name__ == "__main__":
    init_db()
