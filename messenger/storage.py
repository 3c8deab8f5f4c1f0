import logging
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from messenger.config import settings
from messenger.errors import StorageError

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    check_same_thread=False is required for SQLite because FastAPI serves
    requests from several threads. In-memory SQLite URLs share one
    connection so every session sees the same database.
    """
    url = make_url(database_url)
    kwargs = {"echo": False}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = build_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = create_session_factory(engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def init_db(bind: Engine = None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind or engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from messenger.models import User, Message  # noqa: F401

        _ensure_sqlite_directory(str(bind.url))
        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker = None) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    session_factory = session_factory or SessionLocal
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            for table in ("users", "messages"):
                db.execute(text(f"SELECT 1 FROM {table} LIMIT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Repositories
# =============================================================================

class UserRepository:
    """Durable storage for directory identities."""

    def __init__(self, session_factory: sessionmaker = None):
        self._session_factory = session_factory or SessionLocal

    def load_all(self) -> list:
        """Return every stored user row in registration order."""
        from messenger.models import User

        try:
            with self._session_factory() as db:
                return db.query(User).order_by(User.id.asc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load users: {e}")
            raise StorageError("failed to load users") from e

    def insert(self, identity) -> None:
        from messenger.models import User

        logger.debug(f"Persisting user: {identity.phone_number}")
        with self._session_factory() as db:
            try:
                db.add(User(
                    phone_number=identity.phone_number,
                    username=identity.username,
                    username_key=identity.username.lower() if identity.username else None,
                    registered_at=identity.registered_at,
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to persist user {identity.phone_number}: {e}")
                raise StorageError("failed to persist user") from e

    def update_username(self, phone_number: str, username: str) -> None:
        from messenger.models import User

        logger.debug(f"Persisting username for {phone_number}")
        with self._session_factory() as db:
            try:
                updated = (
                    db.query(User)
                    .filter(User.phone_number == phone_number)
                    .update({"username": username, "username_key": username.lower()})
                )
                if updated != 1:
                    raise StorageError(f"user {phone_number} is not stored")
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to persist username for {phone_number}: {e}")
                raise StorageError("failed to persist username") from e


class MessageRepository:
    """Durable storage for the append-only message log."""

    def __init__(self, session_factory: sessionmaker = None):
        self._session_factory = session_factory or SessionLocal

    def load_all(self) -> list:
        """Return every stored message row in append order."""
        from messenger.models import Message

        try:
            with self._session_factory() as db:
                return db.query(Message).order_by(Message.seq.asc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load messages: {e}")
            raise StorageError("failed to load messages") from e

    def insert(self, message) -> None:
        from messenger.models import Message

        logger.debug(f"Persisting message: {message.id}")
        with self._session_factory() as db:
            try:
                db.add(Message(
                    seq=message.seq,
                    id=message.id,
                    from_number=message.sender,
                    to_number=message.recipient,
                    text=message.text,
                    timestamp=message.timestamp,
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to persist message {message.id}: {e}")
                raise StorageError("failed to persist message") from e
