"""Tests for the State Store."""

import json
import threading
from datetime import UTC, datetime, timedelta

import pytest

from tierctl.engine.models import StateRecord
from tierctl.engine.state_store import StateLockTimeoutError, StateStore, _state_file_lock
from tierctl.errors import StateStoreError


def _record(resource_id: str, **kwargs) -> StateRecord:
    return StateRecord(
        resource_id=resource_id,
        resource_type="security_group",
        last_applied_attributes={"name": resource_id},
        provider_assigned_id=f"sg-{resource_id}",
        outputs={"id": f"sg-{resource_id}"},
        **kwargs,
    )


class TestPersistence:
    """Records survive a reload."""

    def test_put_and_reload(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(path).put(_record("web_sg", depends_on=["vpc"], deposed_ids=["sg-old"]))

        loaded = StateStore(path).get("web_sg")
        assert loaded.provider_assigned_id == "sg-web_sg"
        assert loaded.depends_on == ["vpc"]
        assert loaded.deposed_ids == ["sg-old"]
        assert loaded.last_applied_at.tzinfo is not None

    def test_file_format(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(path).put(_record("web_sg"))
        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert data["resources"]["web_sg"]["resource_type"] == "security_group"
        assert oct(path.stat().st_mode & 0o777) == oct(0o600)

    def test_remove(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.put(_record("a"))
        store.remove("a")
        assert "a" not in StateStore(tmp_path / "state.json")

    def test_writes_merge_with_other_processes(self, tmp_path):
        path = tmp_path / "state.json"
        first = StateStore(path)
        second = StateStore(path)
        first.put(_record("a"))
        second.put(_record("b"))
        first.reload()
        assert set(first.all()) == {"a", "b"}

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateStoreError, match="Failed to read"):
            StateStore(path)

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99, "resources": {}}))
        with pytest.raises(StateStoreError, match="Unsupported"):
            StateStore(path)

    def test_corrupt_record(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 1, "resources": {"a": {"resource_id": "a"}}}))
        with pytest.raises(StateStoreError, match="Corrupt state record"):
            StateStore(path)


class TestInMemory:
    """path=None keeps records in memory."""

    def test_get_returns_copy(self):
        store = StateStore()
        store.put(_record("a"))
        record = store.get("a")
        record.outputs["id"] = "changed"
        assert store.get("a").outputs["id"] == "sg-a"

    def test_members_sorted_oldest_first(self):
        store = StateStore()
        now = datetime.now(UTC)
        store.put(_record("m2", managed_by="g", created_at=now))
        store.put(_record("m1", managed_by="g", created_at=now - timedelta(minutes=5)))
        store.put(_record("other"))
        assert [m.resource_id for m in store.members_of("g")] == ["m1", "m2"]

    def test_len_and_contains(self):
        store = StateStore()
        store.put(_record("a"))
        assert len(store) == 1
        assert "a" in store
        assert "b" not in store


class TestLocking:
    """Per-resource and file locks."""

    def test_resource_lock_is_per_resource(self):
        store = StateStore()
        entered = threading.Event()

        def other():
            with store.resource_lock("b"):
                entered.set()

        with store.resource_lock("a"):
            thread = threading.Thread(target=other)
            thread.start()
            assert entered.wait(2)
        thread.join()

    def test_file_lock_timeout(self, tmp_path):
        lock_path = tmp_path / "state.json.lock"
        with _state_file_lock(lock_path, timeout=1.0):
            errors = []

            def contender():
                try:
                    with _state_file_lock(lock_path, timeout=0.1):
                        pass
                except StateLockTimeoutError as e:
                    errors.append(e)

            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()
        assert len(errors) == 1
