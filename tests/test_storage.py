"""
Tests for storage backends and transaction support
"""

import os
import tempfile

import pytest

from loan_servicing.errors import ConfigurationError
from loan_servicing.storage import (
    InMemoryStorage, SQLiteStorage, DuplicateRecordError, create_storage
)


record = {"id": "rec_001", "name": "Test Record", "amount": "100.50"}


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    """Each test runs against both the in-memory and SQLite backends"""
    if request.param == "memory":
        storage = InMemoryStorage()
        yield storage
    else:
        fd, path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        storage = SQLiteStorage(path)
        yield storage
        storage.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(path + suffix):
                os.unlink(path + suffix)


class TestBasicOperations:
    """save/load/find/count behave the same on every backend"""

    def test_save_and_load(self, backend):
        backend.save("items", "rec_001", record)
        assert backend.load("items", "rec_001") == record
        assert backend.load("items", "missing") is None

    def test_save_replaces(self, backend):
        backend.save("items", "rec_001", record)
        backend.save("items", "rec_001", {**record, "name": "Renamed"})

        assert backend.load("items", "rec_001")["name"] == "Renamed"
        assert backend.count("items") == 1

    def test_exists_and_count(self, backend):
        assert not backend.exists("items", "rec_001")
        assert backend.count("items") == 0

        backend.save("items", "rec_001", record)

        assert backend.exists("items", "rec_001")
        assert backend.count("items") == 1

    def test_find_filters_by_field(self, backend):
        backend.save("items", "a", {"id": "a", "owner": "x"})
        backend.save("items", "b", {"id": "b", "owner": "y"})
        backend.save("items", "c", {"id": "c", "owner": "x"})

        found = backend.find("items", {"owner": "x"})

        assert sorted(r["id"] for r in found) == ["a", "c"]

    def test_load_all_keeps_insertion_order(self, backend):
        for i in range(5):
            backend.insert("items", f"rec_{i}", {"id": f"rec_{i}", "n": i})

        assert [r["n"] for r in backend.load_all("items")] == [0, 1, 2, 3, 4]

    def test_load_latest_returns_newest_insert(self, backend):
        assert backend.load_latest("items") is None

        for i in range(3):
            backend.insert("items", f"rec_{i}", {"id": f"rec_{i}", "n": i})

        assert backend.load_latest("items")["n"] == 2
        with backend.atomic():
            assert backend.load_latest("items", lock=True)["n"] == 2

    def test_loaded_records_are_copies(self, backend):
        backend.save("items", "rec_001", {"id": "rec_001", "nested": {"k": 1}})

        loaded = backend.load("items", "rec_001")
        loaded["nested"]["k"] = 99

        assert backend.load("items", "rec_001")["nested"]["k"] == 1

    def test_invalid_table_name_rejected(self, backend):
        with pytest.raises(ValueError):
            backend.save("items; DROP TABLE x", "rec", record)


class TestUniqueInsert:
    """insert() never replaces and enforces unique_key in the backend"""

    def test_duplicate_id_rejected(self, backend):
        backend.insert("items", "rec_001", record)

        with pytest.raises(DuplicateRecordError):
            backend.insert("items", "rec_001", {**record, "name": "Other"})

        assert backend.load("items", "rec_001")["name"] == "Test Record"

    def test_duplicate_unique_key_rejected(self, backend):
        backend.insert("items", "rec_001", record, unique_key="key-1")

        with pytest.raises(DuplicateRecordError) as exc_info:
            backend.insert("items", "rec_002", {"id": "rec_002"}, unique_key="key-1")

        assert exc_info.value.key == "key-1"
        assert backend.count("items") == 1
        assert not backend.exists("items", "rec_002")

    def test_find_by_unique_key(self, backend):
        backend.insert("items", "rec_001", record, unique_key="key-1")

        assert backend.find_by_unique_key("items", "key-1") == record
        assert backend.find_by_unique_key("items", "key-2") is None

    def test_records_without_unique_key_do_not_collide(self, backend):
        backend.insert("items", "rec_001", {"id": "rec_001"})
        backend.insert("items", "rec_002", {"id": "rec_002"})

        assert backend.count("items") == 2

    def test_save_keeps_unique_key(self, backend):
        backend.insert("items", "rec_001", record, unique_key="key-1")
        backend.save("items", "rec_001", {**record, "name": "Updated"})

        assert backend.find_by_unique_key("items", "key-1")["name"] == "Updated"


class TestAtomic:
    """atomic() commits on success and rolls back every write on error"""

    def test_commit(self, backend):
        with backend.atomic():
            backend.insert("items", "rec_001", record, unique_key="key-1")
            backend.save("other", "o1", {"id": "o1"})

        assert backend.exists("items", "rec_001")
        assert backend.exists("other", "o1")

    def test_rollback_on_error(self, backend):
        backend.save("other", "o1", {"id": "o1", "v": 1})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.insert("items", "rec_001", record, unique_key="key-1")
                backend.save("other", "o1", {"id": "o1", "v": 2})
                raise RuntimeError("boom")

        assert not backend.exists("items", "rec_001")
        assert backend.find_by_unique_key("items", "key-1") is None
        assert backend.load("other", "o1")["v"] == 1

    def test_rollback_after_duplicate_insert(self, backend):
        backend.insert("items", "rec_001", record, unique_key="key-1")
        backend.save("other", "o1", {"id": "o1", "v": 1})

        with pytest.raises(DuplicateRecordError):
            with backend.atomic():
                backend.save("other", "o1", {"id": "o1", "v": 2})
                backend.insert("items", "rec_002", {"id": "rec_002"}, unique_key="key-1")

        assert backend.load("other", "o1")["v"] == 1
        assert backend.count("items") == 1

    def test_load_for_update_inside_atomic(self, backend):
        backend.save("items", "rec_001", {"id": "rec_001", "n": 1})

        with backend.atomic():
            row = backend.load_for_update("items", "rec_001")
            row["n"] += 1
            backend.save("items", "rec_001", row)

        assert backend.load("items", "rec_001")["n"] == 2


class TestSQLitePersistence:
    """Data written by one connection is visible to the next"""

    def test_reopen(self):
        fd, path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        try:
            first = SQLiteStorage(path)
            first.insert("items", "rec_001", record, unique_key="key-1")
            first.close()

            second = SQLiteStorage(path)
            assert second.load("items", "rec_001") == record
            with pytest.raises(DuplicateRecordError):
                second.insert("items", "rec_002", {"id": "rec_002"}, unique_key="key-1")
            second.close()
        finally:
            for suffix in ("", "-wal", "-shm"):
                if os.path.exists(path + suffix):
                    os.unlink(path + suffix)


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self, tmp_path):
        path = tmp_path / "servicing.db"
        storage = create_storage(f"sqlite:///{path}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(path)
        storage.close()

    def test_unknown_scheme(self):
        with pytest.raises(ConfigurationError):
            create_storage("mysql://localhost/db")
