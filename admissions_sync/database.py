from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from admissions_sync.config import Settings
from admissions_sync.db_models import Base


def build_engine(settings: Settings) -> Engine:
    connect_args: dict[str, object] = {}
    engine_options: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.call_timeout_seconds
    else:
        engine_options["pool_timeout"] = settings.call_timeout_seconds
        engine_options["pool_pre_ping"] = True
        engine_options["pool_size"] = max(settings.max_workers, 5)

    return create_engine(settings.database_url, connect_args=connect_args, **engine_options)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Ledger tables only; canonical tables are created through SchemaVerifier.migrate.
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
