"""Process-wide engine and session factory.

The API, the poll job and timer jobs each open their own short-lived
sessions from the shared factory; sessions never cross threads.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from pushcast.core.settings import get_settings

_engine = None
_session_factory = None


def get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if make_url(settings.database_url).get_backend_name() == "sqlite":
            # Scheduler jobs run on worker threads.
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)
    return _engine


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            class_=Session,
        )
    return _session_factory
