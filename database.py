from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    # Only pass connect_args if it's not empty
    if connect_args:
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine):
    import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
