from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

from knowledge_scout.config import get_settings


class Base(DeclarativeBase):
    pass


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(
        settings.database_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
    )


def create_schema(engine: Engine | None = None) -> None:
    # Registers the mapped tables on Base.metadata.
    import knowledge_scout.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
