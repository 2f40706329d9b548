from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": config.DATABASE_ECHO, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # banco em memória precisa de uma única conexão compartilhada
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(config.DATABASE_URL, **_engine_kwargs(config.DATABASE_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Base ORM de todos os modelos."""
    pass


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Context manager da sessão:
    - commit se tudo ok
    - rollback em exceções
    - close sempre
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Cria as tabelas que ainda não existem."""
    # registra os modelos no metadata
    from . import auth_models, models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_db() -> None:
    from . import auth_models, models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
