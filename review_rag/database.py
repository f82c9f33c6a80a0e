from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from review_rag.config import settings


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions are opened from worker threads
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


engine = make_engine(settings.database_url)

SessionLocal = make_session_factory(engine)

Base = declarative_base()


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
