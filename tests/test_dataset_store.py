# tests/test_dataset_store.py

"""
Pytest test suite for DatasetStoreManager.
Covers store paths, the single-handle registry, the schema-version gate and the
destructive rebuild used for unreadable stores.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError

from db.dataset_store import (
    JOURNAL_SUFFIXES,
    STATE_EMPTY,
    STATE_READY,
    STATE_STALE,
    DatasetStoreManager,
)
from db.schema.proteomics_schema import (
    CURRENT_SCHEMA_VERSION,
    SCHEMA_VERSION_KEY,
    ProcessedProteomicsData,
    ProteomicsDataMetadata,
)
from utils.exceptions import StoreUnavailableError


# ---------------- Paths and handles ----------------

def test_store_path_is_deterministic(store_manager):
    path = store_manager.get_store_path("abc123")
    assert path.name == "proteomics_data_abc123.sqlite"
    assert path.parent.name == "CurtainData"
    assert path == store_manager.get_store_path("abc123")


@pytest.mark.parametrize("link_id", ["", "../evil", "a/b", ".."])
def test_invalid_link_id_is_rejected(store_manager, link_id):
    with pytest.raises(StoreUnavailableError):
        store_manager.get_store_path(link_id)


def test_get_store_creates_file_lazily(store_manager):
    assert not store_manager.store_file_exists("lazy")
    store_manager.get_store("lazy")
    assert store_manager.store_file_exists("lazy")
    assert store_manager.is_open("lazy")


def test_single_handle_under_concurrent_access(store_manager):
    """
    Concurrent first access to one dataset must yield one shared handle.
    """
    with ThreadPoolExecutor(max_workers=8) as executor:
        stores = list(executor.map(lambda _: store_manager.get_store("shared"), range(16)))
    assert all(store is stores[0] for store in stores)


def test_close_store_drops_handle(store_manager):
    first = store_manager.get_store("closing")
    store_manager.close_store("closing")
    assert not store_manager.is_open("closing")
    assert store_manager.get_store("closing") is not first


def test_closing_stores_forgets_creation_locks(store_manager):
    for link_id in ("lock_a", "lock_b", "lock_c"):
        store_manager.get_store(link_id)
    store_manager.close_store("lock_a")
    assert "lock_a" not in store_manager._creation_locks

    store_manager.destructive_rebuild("lock_b")
    assert "lock_b" not in store_manager._creation_locks

    store_manager.close_all()
    assert store_manager._creation_locks == {}


# ---------------- Schema-version gate ----------------

def test_empty_store_has_no_data(store_manager):
    assert store_manager.data_state("empty") == STATE_EMPTY
    assert store_manager.data_exists("empty") is False


def test_ingested_store_is_ready(store_manager, ingested_dataset):
    assert store_manager.data_state(ingested_dataset) == STATE_READY
    assert store_manager.data_exists(ingested_dataset) is True


def test_version_mismatch_reports_stale(store_manager, ingested_dataset):
    store = store_manager.get_store(ingested_dataset)
    with store.session_scope() as session:
        session.merge(ProteomicsDataMetadata(key=SCHEMA_VERSION_KEY, value=str(CURRENT_SCHEMA_VERSION - 1)))

    assert store_manager.data_state(ingested_dataset) == STATE_STALE
    assert store_manager.data_exists(ingested_dataset) is False


def test_missing_version_record_reports_stale(store_manager, ingested_dataset):
    store = store_manager.get_store(ingested_dataset)
    with store.session_scope() as session:
        session.query(ProteomicsDataMetadata).delete()
    assert store_manager.data_exists(ingested_dataset) is False


# ---------------- Destructive rebuild ----------------

def test_unreadable_file_triggers_destructive_rebuild(store_manager):
    path = store_manager.get_store_path("corrupt")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"this is not a sqlite database" * 100)
    journal = path.parent / f"{path.name}{JOURNAL_SUFFIXES[0]}"
    journal.write_bytes(b"stale journal")

    assert store_manager.data_exists("corrupt") is False
    assert not path.exists()
    assert not journal.exists()

    # The store is recreated empty on next access
    assert store_manager.data_state("corrupt") == STATE_EMPTY


def test_read_error_during_version_check_deletes_store(store_manager, ingested_dataset, monkeypatch):
    path = store_manager.get_store_path(ingested_dataset)
    assert path.exists()

    def failing_state(link_id):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store_manager, "data_state", failing_state)
    assert store_manager.data_exists(ingested_dataset) is False
    assert not path.exists()
    assert not store_manager.is_open(ingested_dataset)


def test_clear_all_removes_rows(store_manager, ingested_dataset):
    store_manager.clear_all(ingested_dataset)
    store = store_manager.get_store(ingested_dataset)
    with store.session_scope() as session:
        assert session.query(ProcessedProteomicsData).count() == 0
    assert store_manager.data_state(ingested_dataset) == STATE_EMPTY


def test_managers_share_files_not_handles(tmp_path, ingested_dataset, store_manager):
    other = DatasetStoreManager(str(tmp_path))
    try:
        assert other.data_exists(ingested_dataset) is True
        assert other.get_store(ingested_dataset) is not store_manager.get_store(ingested_dataset)
    finally:
        other.close_all()
