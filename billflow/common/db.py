"""Engine and session factory construction.

Nothing here is a process-wide singleton: the app factory and the tests each
build their own session factory and hand it to the components that need one.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


def create_session_factory(dsn: str, **engine_kwargs) -> sessionmaker:
    engine_kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(dsn, **engine_kwargs)
    # Entities returned by the service stay readable after the session closes.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_schema(session_factory: sessionmaker) -> None:
    """Create every billflow table on the factory's engine (local runs and tests).

    Deployed databases are migrated with Alembic instead.
    """

    Base.metadata.create_all(session_factory.kw["bind"])
