from typing import Generator

from sqlalchemy.orm import Session

from .. import config as app_config
from ..services.scheduler import CollectionScheduler, collection_scheduler


def get_db() -> Generator[Session, None, None]:
    db = app_config.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scheduler() -> CollectionScheduler:
    return collection_scheduler
