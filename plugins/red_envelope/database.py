from contextlib import contextmanager
from typing import Iterator, Optional

from nonebot import require
from nonebot.log import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

require("nonebot_plugin_localstore")

import nonebot_plugin_localstore as store  # noqa: E402

from .exceptions import InternalStoreError  # noqa: E402
from .models import Base  # noqa: E402


database_path = store.get_data_file("red_envelope", "data.db")

session_factory: Optional[sessionmaker] = None


def create_database_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine and make sure all tables exist

    Without a URL the plugin uses its own sqlite file. Several bot processes
    may point ``database_url`` at one shared server database instead.
    """
    url = database_url or f"sqlite:///{database_path.resolve()}"
    connect_args = {}
    if url.startswith("sqlite"):
        # Claims run in worker threads, sqlite waits on the write lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return engine


def init_database(database_url: Optional[str] = None) -> sessionmaker:
    """Initialize database connections and create tables"""
    global session_factory
    engine = create_database_engine(database_url)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return session_factory


def get_session_factory() -> sessionmaker:
    """Get the session factory, one session per operation"""
    if session_factory is None:
        init_database()
    return session_factory


@contextmanager
def session_scope(factory: sessionmaker, action: str) -> Iterator[Session]:
    """Open a session for one operation; database errors become InternalStoreError"""
    session = factory()
    try:
        yield session
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"{action}时发生数据库错误: {e}")
        raise InternalStoreError(f"{action} failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
