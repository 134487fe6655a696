from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


_engine = None


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
        )
    return _engine


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def init_db(engine=None) -> None:
    """Create the awareness tables that do not exist yet.

    Existing tables are left untouched; there is no migration step.
    """
    import app.models  # noqa: F401  registers every mapped table on Base.metadata

    Base.metadata.create_all(engine or get_engine())


def get_db():
    """Request-scoped session for route handlers.

    Example:
        @router.get("/campaigns")
        def list_campaigns(db: Session = Depends(get_db)):
            return db.query(Campaign).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
