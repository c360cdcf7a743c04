from typing import Optional

from nonebot import require
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker

require("nonebot_plugin_localstore")

import nonebot_plugin_localstore as store  # noqa: E402

from .models import Base  # noqa: E402


# Database path
database_path = store.get_data_file("monetary", "data.db")

# Thread-local session registry
session = None


def init_database(database_url: Optional[str] = None):
    """Initialize database connection and create tables

    Balances and the transaction log share one database so that a credit and
    its log entry commit together.
    """
    global session

    if session is not None:
        session.remove()

    url = database_url or f"sqlite:///{database_path.resolve()}"
    connect_args = {}
    if url.startswith("sqlite"):
        # Credits arrive from worker threads, writers queue on the sqlite lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, connect_args=connect_args)
    Base.metadata.create_all(engine)
    session = scoped_session(sessionmaker(bind=engine))


def get_session():
    """Get the session bound to the calling thread"""
    if session is None:
        init_database()
    return session()
