from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from ridedispatch.core.config import settings

engine_options: dict = {}
if settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
    engine_options["connect_args"] = {"check_same_thread": False}
    if settings.SQLALCHEMY_DATABASE_URI in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every thread sees its own empty database
        engine_options["poolclass"] = StaticPool

engine = create_engine(settings.SQLALCHEMY_DATABASE_URI, **engine_options)


def init_db(session: Session) -> None:
    # Tables are created here for local runs; production schemas are managed
    # by migrations. Importing models registers them on the metadata.
    from ridedispatch import models  # noqa: F401

    SQLModel.metadata.create_all(session.get_bind())
