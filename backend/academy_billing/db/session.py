import os
from typing import Any, Generator

from sqlmodel import Session, SQLModel, create_engine

import academy_billing.db.base  # noqa: F401
from academy_billing.core.config import settings

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
    SQLModel.metadata.create_all(bind=engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def session_factory() -> Session:
    """New session bound to the current engine (used by side channels such as audit)."""
    return Session(engine)
