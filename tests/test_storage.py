"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
from pathlib import Path

from sacco_ledger.errors import PersistenceError
from sacco_ledger.storage import InMemoryStorage, SQLiteStorage, create_storage


test_data = {
    "id": "rec_001",
    "member_number": "MEM000001",
    "amount": "100",
    "active": True,
}


class TestStorageInterface:
    """Test basic CRUD operations on both backends"""

    @pytest.mark.parametrize("factory", [InMemoryStorage, lambda: SQLiteStorage(":memory:")])
    def test_basic_operations(self, factory):
        storage = factory()

        storage.save("records", "rec_001", test_data)
        assert storage.load("records", "rec_001") == test_data
        assert storage.exists("records", "rec_001")
        assert not storage.exists("records", "missing")
        assert storage.load("records", "missing") is None

        storage.save("records", "rec_002", {"id": "rec_002", "member_number": "MEM000002", "active": False})
        assert [r["id"] for r in storage.load_all("records")] == ["rec_001", "rec_002"]

        results = storage.find("records", {"member_number": "MEM000002"})
        assert len(results) == 1
        assert results[0]["id"] == "rec_002"
        assert storage.count("records") == 2

        assert storage.delete("records", "rec_001")
        assert not storage.delete("records", "rec_001")
        assert storage.count("records") == 1

        storage.clear_table("records")
        assert storage.count("records") == 0
        storage.close()

    def test_sqlite_find_matches_booleans_exactly(self):
        """json_extract treats true as 1, results must not"""
        storage = SQLiteStorage(":memory:")
        storage.save("records", "a", {"id": "a", "flag": True})
        storage.save("records", "b", {"id": "b", "flag": 1})

        assert [r["id"] for r in storage.find("records", {"flag": True})] == ["a"]
        assert [r["id"] for r in storage.find("records", {"flag": 1})] == ["b"]

    def test_sqlite_file_persists_across_connections(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "sacco.db"
            storage = SQLiteStorage(db_path)
            storage.save("records", "rec_001", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("records", "rec_001") == test_data
            reopened.close()

    def test_closed_sqlite_raises_persistence_error(self):
        storage = SQLiteStorage(":memory:")
        storage.close()
        with pytest.raises(PersistenceError):
            storage.load("records", "rec_001")

    def test_saved_data_is_copied(self):
        storage = InMemoryStorage()
        data = {"id": "rec_001", "tags": ["a"]}
        storage.save("records", "rec_001", data)
        data["tags"].append("b")

        loaded = storage.load("records", "rec_001")
        assert loaded["tags"] == ["a"]
        loaded["tags"].append("c")
        assert storage.load("records", "rec_001")["tags"] == ["a"]


class TestTransactionSupport:
    """Test atomic transaction support"""

    @pytest.mark.parametrize("factory", [InMemoryStorage, lambda: SQLiteStorage(":memory:")])
    def test_atomic_commits(self, factory):
        storage = factory()
        with storage.atomic():
            storage.save("records", "rec_001", test_data)
            assert storage.in_transaction
        assert not storage.in_transaction
        assert storage.load("records", "rec_001") == test_data

    @pytest.mark.parametrize("factory", [InMemoryStorage, lambda: SQLiteStorage(":memory:")])
    def test_atomic_rolls_back_on_error(self, factory):
        storage = factory()
        storage.save("records", "keep", {"id": "keep"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("records", "rec_001", test_data)
                storage.delete("records", "keep")
                raise RuntimeError("boom")

        assert storage.load("records", "rec_001") is None
        assert storage.exists("records", "keep")

    @pytest.mark.parametrize("factory", [InMemoryStorage, lambda: SQLiteStorage(":memory:")])
    def test_nested_scopes_commit_with_outermost(self, factory):
        storage = factory()
        with storage.atomic():
            with storage.atomic():
                storage.save("records", "inner", {"id": "inner"})
            storage.save("records", "outer", {"id": "outer"})
        assert storage.count("records") == 2

    @pytest.mark.parametrize("factory", [InMemoryStorage, lambda: SQLiteStorage(":memory:")])
    def test_failed_inner_scope_dooms_outer(self, factory):
        storage = factory()
        with pytest.raises(PersistenceError):
            with storage.atomic():
                storage.save("records", "outer", {"id": "outer"})
                try:
                    with storage.atomic():
                        storage.save("records", "inner", {"id": "inner"})
                        raise RuntimeError("inner failure")
                except RuntimeError:
                    pass
        assert storage.count("records") == 0

    def test_sqlite_table_created_in_rolled_back_transaction_is_recreated(self):
        storage = SQLiteStorage(":memory:")
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", "a", {"id": "a"})
                raise RuntimeError("boom")

        storage.save("fresh", "b", {"id": "b"})
        assert storage.count("fresh") == 1

    def test_in_memory_writes_are_invisible_to_other_threads_until_commit(self):
        storage = InMemoryStorage()
        seen = {}
        saved = threading.Event()
        checked = threading.Event()

        def reader():
            saved.wait()
            seen["during"] = storage.exists("records", "rec_001")
            checked.set()

        thread = threading.Thread(target=reader)
        thread.start()
        with storage.atomic():
            storage.save("records", "rec_001", test_data)
            saved.set()
            checked.wait(timeout=5)
        thread.join()

        assert seen["during"] is False
        assert storage.exists("records", "rec_001")


class TestCreateStorage:
    """Test backend selection from database URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"

    def test_sqlite_file_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "ledger.db"
            storage = create_storage(f"sqlite:///{path}")
            assert isinstance(storage, SQLiteStorage)
            storage.save("records", "a", {"id": "a"})
            storage.close()
            assert path.exists()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/sacco")
