from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from config import settings


SQLALCHEMY_DATABASE_URL = settings.sqlalchemy_database_url

if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    # single shared connection so in-memory databases survive across sessions
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    # imported for its side effect of registering tables on Base.metadata
    import core.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def ping_db() -> tuple[bool, str]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True, "DB connection OK"

    except SQLAlchemyError as e:
        return False, f"DB connection FAILED: {e.__class__.__name__}: {e}"
