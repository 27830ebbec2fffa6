import logging

from fastapi import FastAPI
from sqlalchemy.orm import Session

from .api import collections, system
from .config import Base, SessionLocal, engine, settings
from .constants import DEFAULT_ROLES
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .models.models import Role
from .services.email import log_email_configuration
from .services.scheduler import collection_scheduler

logger = logging.getLogger(__name__)


def ensure_default_roles(session: Session) -> None:
    for name, description in DEFAULT_ROLES:
        role = session.query(Role).filter(Role.name == name).first()
        if not role:
            session.add(Role(name=name, description=description))
    session.commit()


app = FastAPI(title="Condo Collections Engine")
register_exception_handlers(app)

app.include_router(collections.router, prefix="/collections", tags=["collections"])
app.include_router(system.router, prefix="/system", tags=["system"])


@app.on_event("startup")
def startup() -> None:
    configure_logging(settings.log_level, settings.log_format)
    # In dev we make sure tables exist.
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_default_roles(session)
    log_email_configuration()
    if settings.collections_scheduler_enabled:
        collection_scheduler.start()
        logger.info(
            "Daily collections check scheduled at %02d:%02d %s; next run %s.",
            settings.collections_run_hour,
            settings.collections_run_minute,
            settings.collections_timezone,
            collection_scheduler.next_run_at().isoformat(),
        )
    else:
        logger.info("Collections scheduler disabled; only manual triggers will run.")


@app.on_event("shutdown")
def shutdown() -> None:
    collection_scheduler.stop()
