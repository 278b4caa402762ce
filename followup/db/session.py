from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from followup.core.config import settings


def build_engine(database_uri: str, timeout_seconds: int = settings.STORE_TIMEOUT_SECONDS):
    if database_uri.startswith("sqlite"):
        # SQLite only backs local runs and tests
        return create_engine(
            database_uri,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            echo=False,
        )
    return create_engine(
        database_uri,
        pool_size=10,
        max_overflow=20,
        pool_recycle=300,      # Recycle connections every 5 minutes
        pool_pre_ping=True,    # Validate connections before use
        pool_timeout=timeout_seconds,
        # Server-side cap so a stuck query surfaces as an error instead of hanging a cycle
        connect_args={"options": f"-c statement_timeout={timeout_seconds * 1000}"},
        echo=False,
    )


engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
