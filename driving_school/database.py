from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()
engine = None
SessionLocal = None


def init_db(database_url: str):
    """Bind the session factory and create any missing tables. Idempotent."""
    global engine, SessionLocal
    if engine is not None:
        return
    engine = create_engine(database_url, pool_pre_ping=True)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    # models must be imported for their tables to be registered on Base
    from driving_school import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db():
    if SessionLocal is None:
        raise RuntimeError("Database is not initialised; call init_db() first")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
