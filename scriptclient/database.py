import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

engine = None


def init_db(url: str):
    """Bind the session factory to ``url`` and create missing tables."""
    global engine
    from scriptclient import models  # noqa: F401  registers tables on Base

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        path = url.split("///", 1)[-1]
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    engine = create_engine(url, connect_args=connect_args)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Event database initialized at {url}")
    return engine
