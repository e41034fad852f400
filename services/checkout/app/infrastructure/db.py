from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from app.core_settings import get_settings
from app.domain.models import Base
from shared.core import get_logger, retry_with_backoff

logger = get_logger(__name__)

settings = get_settings()
DATABASE_URL = settings.database_url


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Route handlers run in FastAPI's threadpool
        return create_engine(url, echo=False, future=True, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False, future=True, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_models():
    Base.metadata.create_all(engine)

def wait_for_database(max_attempts: int = 30, delay: float = 1.0) -> None:
    """Block until the database accepts connections."""
    def ping():
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    retry_with_backoff(
        ping,
        attempts=max_attempts,
        base_delay=delay,
        multiplier=1.0,
        description="database connection",
    )
    logger.info("Database is ready")
