import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from .config import settings
from .exceptions import BookingEngineError, PersistenceError

logger = logging.getLogger("booking_service")

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


Base = declarative_base()


@contextmanager
def atomic(db: Session, wrap_as: type[BookingEngineError] = PersistenceError, operation: str = "operation"):
    """
    One transactional boundary: commits when the block exits cleanly,
    rolls everything back otherwise.

    Domain errors propagate unchanged. Anything else (driver errors, flush
    failures) is wrapped in `wrap_as` so the caller sees a single error type.
    """
    try:
        yield db
        db.commit()
    except BookingEngineError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}, rolled back: {e}")
        raise wrap_as(f"{operation} failed: {e}") from e
    except Exception as e:
        db.rollback()
        logger.error(f"Unexpected error during {operation}, rolled back: {e}")
        raise wrap_as(f"{operation} failed: {e}") from e
