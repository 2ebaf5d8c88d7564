from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def build_engine(db_url: str) -> Engine:
    try:
        is_sqlite = make_url(db_url).get_backend_name() == "sqlite"
    except Exception:
        # Fallback: handle values like "sqlite+pysqlite:///:memory:"
        is_sqlite = db_url.startswith("sqlite")

    # Create engine - tune params for SQLite vs. others
    if is_sqlite:
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if db_url.endswith(":memory:"):
            # in-memory SQLite needs one shared connection to keep its data
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)
    # Postgres/MySQL: enable pooling
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        pool_recycle=3600,
        echo=False,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db_session(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        # Ensure failed requests don't leave transactions open
        db.rollback()
        raise
    finally:
        db.close()
