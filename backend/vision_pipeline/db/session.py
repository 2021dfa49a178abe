from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from vision_pipeline.core.settings import settings


def build_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)
    connect_args = {"check_same_thread": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every thread sees its own empty database
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(settings.database_url)


def init_db(bind=None) -> None:
    # Registers the tables on SQLModel.metadata
    from vision_pipeline.models import entities  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
