from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from payment_api.config import settings


def _engine_options(db_url: str) -> dict:
    """
    Bound every storage wait: the pool checkout and the driver connect.
    """
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        # sqlite's busy timeout doubles as its lock wait.
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.db_connect_timeout_seconds,
            },
        }
    return {
        "pool_pre_ping": True,
        "pool_timeout": settings.db_pool_timeout_seconds,
        "connect_args": {"connect_timeout": settings.db_connect_timeout_seconds},
    }


engine = create_engine(settings.db_url, **_engine_options(settings.db_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
