# database.py
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from coach.database.models import Base, UserProfile
from coach.errors import ErrorCode, PersistenceError


class DatabaseConnection:
    def __init__(self, url: Optional[str] = None, **engine_kwargs: Dict[str, Any]):
        database_url = url or os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL must be provided either through environment variable or constructor")

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_db(self) -> Generator:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

# Create default instance only if DATABASE_URL is set
conn = DatabaseConnection() if os.getenv("DATABASE_URL") else None


def persistence_error(exc: SQLAlchemyError) -> PersistenceError:
    if isinstance(exc, OperationalError):
        return PersistenceError(
            "El almacenamiento no está disponible. Intenta de nuevo en unos minutos.",
            code=ErrorCode.UNAVAILABLE,
        )
    return PersistenceError()


@contextmanager
def transaction() -> Generator:
    """Yield a session that commits on success and rolls back on any failure.

    SQLAlchemy errors leave as PersistenceError, everything else propagates as is.
    """
    if conn is None:
        raise PersistenceError("Database connection is not configured")
    with conn.get_db() as db:
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise persistence_error(e) from e
        except Exception:
            db.rollback()
            raise


def get_record(model, key):
    with transaction() as db:
        return db.get(model, key)


def query_records(model, *criteria, order_by=None, limit: Optional[int] = None) -> List:
    with transaction() as db:
        query = db.query(model).filter(*criteria)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        return query.all()


def get_user(user_id: str) -> Optional[UserProfile]:
    return get_record(UserProfile, user_id)


def add_user(user_id: str, now: datetime, target_calories: Optional[int] = None) -> UserProfile:
    with transaction() as db:
        user = db.get(UserProfile, user_id)
        if user is None:
            user = UserProfile(user_id=user_id, target_calories=target_calories,
                               created_at=now, updated_at=now)
            db.add(user)
        return user
