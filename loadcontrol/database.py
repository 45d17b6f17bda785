from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from loadcontrol.db_models import Base


SQLITE_LOCK_TIMEOUT_SECONDS = 30


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # Concurrent writers wait on the database lock instead of failing fast.
        connect_args["timeout"] = SQLITE_LOCK_TIMEOUT_SECONDS

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
