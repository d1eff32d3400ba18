"""
SQLite persistence for makerfleet.

One engine and session factory per database file, created (with the
schema) the first time the file is used in this process.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generator, List

from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session, sessionmaker

from makerfleet.core.config import Config
from makerfleet.core.models import Base, DeliveryRecord

_factories: Dict[str, sessionmaker] = {}


def _session_factory(config: Config) -> sessionmaker:
    db_path = Path(config.database_path)
    key = str(db_path.resolve())

    factory = _factories.get(key)
    if factory is not None:
        return factory

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    # WAL lets the status command read while a run is writing
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    Base.metadata.create_all(engine)

    factory = sessionmaker(bind=engine, expire_on_commit=False)
    _factories[key] = factory
    return factory


def init_db(config: Config) -> None:
    """Create the database file and tables if they don't exist."""
    _session_factory(config)


@contextmanager
def session_scope(config: Config) -> Generator[Session, None, None]:
    """
    Provide transactional scope around a series of operations.

    Usage:
        with session_scope(config) as session:
            session.add(record)
    """
    session = _session_factory(config)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def recent_deliveries(config: Config, limit: int = 10) -> List[DeliveryRecord]:
    """Most recent delivery records, newest first."""
    with session_scope(config) as session:
        query = select(DeliveryRecord).order_by(DeliveryRecord.created_at.desc()).limit(limit)
        return list(session.scalars(query))
