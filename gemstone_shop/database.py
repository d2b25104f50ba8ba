import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from gemstone_shop.config import get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """Commit everything done inside the block, or roll all of it back.

    Any exception raised inside the block rolls the session back before it
    propagates, so no partial order or stock change is ever persisted.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        logger.debug("Transaction rolled back", exc_info=True)
        raise
