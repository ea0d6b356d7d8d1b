import os
from typing import Any, Generator

from sqlmodel import Session, SQLModel, create_engine, select

from pbx_billing.core.config import settings
from pbx_billing.core.logging_setup import logger

connect_args: dict[str, Any] = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
elif settings.database_url.startswith("postgresql"):
    client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
    connect_args["options"] = f"-c client_encoding={client_encoding}"

engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args=connect_args,
)


def init_db() -> None:
    # Register every table on the metadata before creating it.
    import pbx_billing.db.base  # noqa: F401

    SQLModel.metadata.create_all(bind=engine)
    logger.info("Billing schema ready on %s", engine.url.render_as_string(hide_password=True))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def get_for_update(session: Session, model: type[SQLModel], entity_id: Any) -> Any:
    """Re-read a row under a row lock (no-op on SQLite) before mutating it."""
    statement = (
        select(model)
        .where(model.id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.exec(statement).first()
