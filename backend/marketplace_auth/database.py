"""Engine and session factory construction."""

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace_auth.db_base import Base


def normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_session_factory(database_url: str, create_tables: bool = False) -> sessionmaker[Session]:
    """
    Build a session factory for the credential store.

    Args:
        database_url: SQLAlchemy URL (postgres:// is rewritten to postgresql://)
        create_tables: Create missing tables (local development and SQLite)
    """
    engine = create_engine(normalize_database_url(database_url), pool_pre_ping=True)
    if create_tables:
        # Register models on the metadata before create_all
        import marketplace_auth.models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
