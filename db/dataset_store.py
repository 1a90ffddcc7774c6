# File: db/dataset_store.py
# Lifecycle management of the per-dataset SQLite stores: lazy opening with a
# single handle per link id, the schema-version gate, bulk clearing and the
# destructive rebuild used to recover from unreadable or outdated files.

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config.store_config import create_session_factory, create_store_engine, get_data_dir, session_scope
from db import mapping_table  # noqa: F401  registers the mapping tables on Base.metadata
from db.schema.proteomics_schema import (
    Base,
    CURRENT_SCHEMA_VERSION,
    SCHEMA_VERSION_KEY,
    ProcessedProteomicsData,
    ProteomicsDataMetadata,
    RawProteomicsData,
)
from utils.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

STORE_FILE_PREFIX = "proteomics_data_"
STORE_FILE_SUFFIX = ".sqlite"
# Side files SQLite may leave next to the main database file
JOURNAL_SUFFIXES = ("-wal", "-shm", "-journal")

# Results of DatasetStoreManager.data_state
STATE_READY = "ready"
STATE_EMPTY = "empty"
STATE_STALE = "stale"


class DatasetStore:
    """
    Open handle on one dataset's SQLite file.

    Attributes:
        link_id (str): Dataset identifier.
        path (Path): Location of the SQLite file.
        engine (Engine): Engine bound to the file.
        SessionLocal (sessionmaker): Session factory bound to the engine.
    """

    def __init__(self, link_id: str, path: Path, engine: Engine):
        self.link_id = link_id
        self.path = path
        self.engine = engine
        self.SessionLocal: sessionmaker = create_session_factory(engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on SQLAlchemy errors."""
        with session_scope(self.SessionLocal) as session:
            yield session

    def dispose(self) -> None:
        self.engine.dispose()

    def __repr__(self):
        return f"<DatasetStore(link_id={self.link_id}, path={self.path})>"


class DatasetStoreManager:
    """
    Registry of open dataset stores.

    One manager is constructed by the caller and handed to the ingestor, the mapping
    builder, the lookup service and the search services. The registry is guarded by a
    lock, and store creation by a per-link-id lock, so concurrent first access to the
    same dataset yields a single handle.
    """

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir: Path = get_data_dir(data_dir)
        self._stores: Dict[str, DatasetStore] = {}
        self._creation_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------ paths

    def get_store_path(self, link_id: str) -> Path:
        """Returns the deterministic file location of a dataset store."""
        if not link_id or "/" in link_id or "\\" in link_id or link_id in {".", ".."}:
            raise StoreUnavailableError(link_id, "invalid dataset identifier")
        return self.data_dir / f"{STORE_FILE_PREFIX}{link_id}{STORE_FILE_SUFFIX}"

    def store_file_exists(self, link_id: str) -> bool:
        return self.get_store_path(link_id).exists()

    # ------------------------------------------------------------------ handles

    def get_store(self, link_id: str) -> DatasetStore:
        """
        Returns the store for a dataset, opening it and creating its tables on first use.

        Args:
            link_id (str): Dataset identifier.

        Returns:
            DatasetStore: The cached handle; the same object for every caller.

        Raises:
            StoreUnavailableError: If the file cannot be created or opened.
        """
        with self._registry_lock:
            store = self._stores.get(link_id)
            if store is not None:
                return store
            creation_lock = self._creation_locks.setdefault(link_id, threading.Lock())

        with creation_lock:
            # Another caller may have finished opening the store while we waited
            with self._registry_lock:
                store = self._stores.get(link_id)
                if store is not None:
                    return store

            path = self.get_store_path(link_id)
            engine = None
            try:
                engine = create_store_engine(path)
                Base.metadata.create_all(engine)
            except (OSError, SQLAlchemyError) as e:
                if engine is not None:
                    engine.dispose()
                logger.error(f"Failed to open store for {link_id} at {path}: {e}")
                raise StoreUnavailableError(link_id, str(e)) from e

            store = DatasetStore(link_id, path, engine)
            with self._registry_lock:
                self._stores[link_id] = store
            logger.info(f"Opened dataset store {link_id} at {path}")
            return store

    def close_store(self, link_id: str) -> None:
        """Disposes the handle of a dataset store, if it is open."""
        with self._registry_lock:
            store = self._stores.pop(link_id, None)
            self._release_creation_lock(link_id)
        if store is not None:
            store.dispose()
            logger.info(f"Closed dataset store {link_id}")

    def close_all(self) -> None:
        with self._registry_lock:
            stores = list(self._stores.values())
            self._stores.clear()
            for link_id in list(self._creation_locks):
                self._release_creation_lock(link_id)
        for store in stores:
            store.dispose()
        logger.info(f"Closed {len(stores)} dataset store(s)")

    def _release_creation_lock(self, link_id: str) -> None:
        """Forgets the creation lock of a dataset unless an opener holds it. Needs _registry_lock."""
        lock = self._creation_locks.get(link_id)
        if lock is not None and not lock.locked():
            del self._creation_locks[link_id]

    def is_open(self, link_id: str) -> bool:
        with self._registry_lock:
            return link_id in self._stores

    # ------------------------------------------------------------------ schema gate

    def data_state(self, link_id: str) -> str:
        """
        Classifies the contents of a dataset store.

        Returns:
            str: STATE_EMPTY when there are no processed or raw rows, STATE_STALE when rows
            exist but the schema version record differs from CURRENT_SCHEMA_VERSION,
            STATE_READY otherwise.

        Raises:
            StoreUnavailableError, SQLAlchemyError: When the store cannot be read.
        """
        store = self.get_store(link_id)
        with store.session_scope() as session:
            processed_count = session.query(func.count(ProcessedProteomicsData.id)).scalar() or 0
            raw_count = session.query(func.count(RawProteomicsData.id)).scalar() or 0
            version_record = session.get(ProteomicsDataMetadata, SCHEMA_VERSION_KEY)
            stored_version = version_record.value if version_record is not None else None

        if processed_count == 0 and raw_count == 0:
            return STATE_EMPTY
        if stored_version != str(CURRENT_SCHEMA_VERSION):
            logger.warning(
                f"Dataset {link_id} has schema version {stored_version}, expected {CURRENT_SCHEMA_VERSION}"
            )
            return STATE_STALE
        return STATE_READY

    def data_exists(self, link_id: str) -> bool:
        """
        True only when the store holds rows stamped with the current schema version.

        Any failure while reading the store is treated as corruption: the store file is
        deleted and False is returned.
        """
        try:
            return self.data_state(link_id) == STATE_READY
        except (StoreUnavailableError, SQLAlchemyError, OSError) as e:
            logger.error(f"Error checking data for {link_id}, rebuilding store: {e}")
            try:
                self.destructive_rebuild(link_id)
            except StoreUnavailableError as rebuild_error:
                logger.error(f"Destructive rebuild of {link_id} failed: {rebuild_error}")
            return False

    def store_schema_version(self, link_id: str) -> None:
        """Stamps the store with CURRENT_SCHEMA_VERSION."""
        store = self.get_store(link_id)
        with store.session_scope() as session:
            session.merge(ProteomicsDataMetadata(key=SCHEMA_VERSION_KEY, value=str(CURRENT_SCHEMA_VERSION)))
        logger.info(f"Stored schema version {CURRENT_SCHEMA_VERSION} for {link_id}")

    # ------------------------------------------------------------------ destructive operations

    def clear_all(self, link_id: str) -> None:
        """
        Deletes every row from every table of the store, keeping it open.
        Falls back to a destructive rebuild when the store cannot be cleared.
        """
        try:
            store = self.get_store(link_id)
            with store.session_scope() as session:
                for table in reversed(Base.metadata.sorted_tables):
                    session.execute(table.delete())
            logger.info(f"Cleared all data for {link_id}")
        except (StoreUnavailableError, SQLAlchemyError) as e:
            logger.error(f"Error clearing data for {link_id}, rebuilding store: {e}")
            self.destructive_rebuild(link_id)

    def delete_store_file(self, link_id: str) -> None:
        """Removes the store file and its journal side files from disk."""
        path = self.get_store_path(link_id)
        for candidate in [str(path)] + [f"{path}{suffix}" for suffix in JOURNAL_SUFFIXES]:
            if os.path.exists(candidate):
                os.remove(candidate)
                logger.info(f"Deleted {candidate}")

    def destructive_rebuild(self, link_id: str) -> None:
        """
        Drops the handle and deletes the backing file plus journal artifacts.
        The store is recreated empty on next access.
        """
        logger.warning(f"Performing destructive rebuild of dataset store {link_id}")
        self.close_store(link_id)
        try:
            self.delete_store_file(link_id)
        except (OSError, StoreUnavailableError) as e:
            logger.error(f"Failed to delete store files for {link_id}: {e}")
            raise StoreUnavailableError(link_id, f"could not delete store files: {e}") from e
