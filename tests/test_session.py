"""Tests for authfetch.session module."""

import threading

from authfetch.session import SESSION_FLAG_KEY, FileStore, MemoryStore, SessionState


class TestMemoryStore:
    def test_set_get_remove(self):
        store = MemoryStore()

        store.set("key", "value")
        assert store.get("key") == "value"

        store.remove("key")
        assert store.get("key") is None

    def test_remove_missing_key(self):
        MemoryStore().remove("missing")

    def test_wraps_given_mapping(self):
        mapping = {}
        store = MemoryStore(mapping)

        store.set("a", "1")
        assert mapping == {"a": "1"}


class TestFileStore:
    """Tests for the encrypted file store."""

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "session.enc"

        FileStore(str(path), "secret").set("key", "value")

        assert FileStore(str(path), "secret").get("key") == "value"

    def test_file_is_encrypted(self, tmp_path):
        path = tmp_path / "session.enc"

        FileStore(str(path), "secret").set("isLoggedIn", "yes")

        assert b"isLoggedIn" not in path.read_bytes()

    def test_wrong_key_reads_empty(self, tmp_path):
        path = tmp_path / "session.enc"
        FileStore(str(path), "secret").set("key", "value")

        assert FileStore(str(path), "other").get("key") is None

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "session.enc"
        path.write_bytes(b"garbage")

        assert FileStore(str(path), "secret").get("key") is None

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "session.enc"

        FileStore(str(path), "secret").set("key", "value")

        assert path.exists()

    def test_remove(self, tmp_path):
        store = FileStore(str(tmp_path / "session.enc"), "secret")
        store.set("a", "1")
        store.set("b", "2")

        store.remove("a")
        store.remove("missing")

        assert store.get("a") is None
        assert store.get("b") == "2"


class TestSessionState:
    def test_initially_logged_out(self):
        assert SessionState().is_logged_in() is False

    def test_mark_and_clear(self):
        state = SessionState()

        state.mark_logged_in()
        assert state.is_logged_in() is True

        state.clear()
        assert state.is_logged_in() is False

    def test_flag_stored_under_fixed_key(self):
        store = MemoryStore()
        state = SessionState(store)

        state.mark_logged_in()

        assert SESSION_FLAG_KEY == "isLoggedIn"
        assert store.get("isLoggedIn") == "yes"
        assert state.store is store

    def test_clear_when_logged_out(self):
        state = SessionState()
        state.clear()
        assert state.is_logged_in() is False

    def test_file_backed_state_survives_restart(self, tmp_path):
        path = str(tmp_path / "session.enc")
        SessionState(FileStore(path, "secret")).mark_logged_in()

        assert SessionState(FileStore(path, "secret")).is_logged_in() is True

    def test_concurrent_updates(self):
        workers = 8
        state = SessionState()
        barrier = threading.Barrier(workers)

        def toggle():
            barrier.wait()
            for _ in range(100):
                state.mark_logged_in()
                state.is_logged_in()
                state.clear()

        threads = [threading.Thread(target=toggle) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert state.is_logged_in() is False
