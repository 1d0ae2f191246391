from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def get_engine(database_url: str, echo: bool = False):
    return create_async_engine(database_url, echo=echo, future=True)


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )
