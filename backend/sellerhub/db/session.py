"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sellerhub.core.config import settings
from sellerhub.models.base import Base

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import sellerhub.models  # noqa: F401  (registers models with Base.metadata)
    Base.metadata.create_all(bind=engine)
