from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import cargar_configuracion

DATABASE_URL = cargar_configuracion().database_url

# SQLite: los endpoints síncronos de FastAPI corren en un threadpool
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    echo=False,              # True para ver las queries
    future=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Base ORM para todos los modelos."""
    pass


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Unidad de trabajo por petición:
    - commit si todo va bien
    - rollback ante excepciones
    - close siempre
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
