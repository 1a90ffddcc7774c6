# File: config/store_config.py
# This file configures the SQLite storage used by the per-dataset proteomics stores.
# It loads environment variables from config/.env, resolves the data directory and builds
# SQLAlchemy engines and session factories for individual dataset files.

import os  # For accessing environment variables
import logging  # For logging configuration events
from contextlib import contextmanager  # For context-managed sessions
from pathlib import Path  # For managing filesystem paths
from typing import Iterator, Optional

from dotenv import load_dotenv  # Loads environment variables from a .env file
from sqlalchemy import create_engine, event  # Engine creation and connection hooks
from sqlalchemy.engine import Engine  # Engine type for type hinting
from sqlalchemy.exc import SQLAlchemyError  # For SQLAlchemy error handling
from sqlalchemy.orm import Session, sessionmaker  # For session management

logger = logging.getLogger(__name__)

# Load environment variables from the .env file in the config directory (optional file)
env_path = Path(__file__).resolve().parent.parent / "config" / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)
    logger.info(".env file loaded successfully.")

DATA_DIR_ENV = "CURTAIN_DATA_DIR"
ECHO_ENV = "CURTAIN_DB_ECHO"

# Sub-directory that holds one SQLite file per dataset
STORE_SUBDIR = "CurtainData"


def get_data_dir(data_dir: Optional[str] = None) -> Path:
    """
    Resolves the directory holding the per-dataset store files.

    Args:
        data_dir (Optional[str]): Explicit base directory. Falls back to CURTAIN_DATA_DIR,
            then to ``~/.curtain``.

    Returns:
        Path: ``<base>/CurtainData``. The directory is not created here.
    """
    base = data_dir or os.getenv(DATA_DIR_ENV) or str(Path.home() / ".curtain")
    return Path(base).expanduser() / STORE_SUBDIR


def _echo_enabled() -> bool:
    return os.getenv(ECHO_ENV, "False").lower() == "true"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(db_path: Path) -> Engine:
    """
    Creates a SQLAlchemy engine bound to a single SQLite store file.

    The engine may be shared between the worker threads of a cross-dataset search,
    so SQLite's same-thread check is disabled.

    Args:
        db_path (Path): Location of the SQLite file. Parent directories are created.

    Returns:
        Engine: The engine for the store.

    Raises:
        OSError: If the parent directory cannot be created.
        SQLAlchemyError: If the engine cannot be created.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=_echo_enabled(),  # Enable SQL logging when CURTAIN_DB_ECHO=true
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    except SQLAlchemyError as e:
        logger.error(f"Failed to create engine for store {db_path}: {e}")
        raise
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Returns a session factory bound to the given engine."""
    # Rows are handed to callers after the session closes, so they must not expire on commit
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Provides a session as a context manager.

    The transaction is committed when the block exits normally and rolled back on
    SQLAlchemy errors, which are re-raised to the caller.

    Yields:
        Session: A SQLAlchemy session for ORM operations.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()  # Rollback the transaction on error
        logger.error(f"Error during session operation: {e}")
        raise
    finally:
        session.close()
