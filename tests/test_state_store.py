import json
import os
from typing import Dict, Optional

import pytest
from google.api_core.exceptions import PreconditionFailed

from fn_deploy_kit.config import DeploySettings
from fn_deploy_kit.errors import StateStoreError, ValidationError
from fn_deploy_kit.state_store import (
    FileStateStore,
    GcsStateStore,
    InMemoryStateStore,
    open_state_store,
    validate_deployment_id,
)


@pytest.mark.parametrize("value", ["fn-deploy-abc123", "demo_app", "A1"])
def test_valid_deployment_ids(value: str) -> None:
    assert validate_deployment_id(value) == value


@pytest.mark.parametrize("value", ["", "a", "1abc", "../etc", "_aliases", "has space", "x" * 61])
def test_invalid_deployment_ids(value: str) -> None:
    with pytest.raises(ValidationError):
        validate_deployment_id(value)


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryStateStore()
    store.put("demo", "function", {"state": {"name": "demo"}})

    records = store.get("demo")
    records["function"]["state"]["name"] = "changed"

    assert store.get("demo")["function"]["state"]["name"] == "demo"


def test_file_store_round_trip_and_cleanup(tmp_path) -> None:  # noqa: ANN001
    store = FileStateStore(str(tmp_path / "state"))
    store.put("demo", "function", {"type": "function", "state": {"name": "demo"}})
    store.put("demo", "apigateway", {"type": "apigateway", "state": {"service_id": "svc-1"}})

    # 새 인스턴스에서도 그대로 읽혀야 한다.
    reopened = FileStateStore(str(tmp_path / "state"))
    assert set(reopened.get("demo")) == {"function", "apigateway"}

    reopened.delete("demo", "apigateway")
    reopened.delete("demo", "function")

    assert reopened.get("demo") == {}
    assert not os.path.exists(tmp_path / "state" / "demo.json")


def test_file_store_aliases(tmp_path) -> None:  # noqa: ANN001
    store = FileStateStore(str(tmp_path))

    assert store.get_alias("default") is None
    store.set_alias("default", "fn-deploy-abc123")
    assert FileStateStore(str(tmp_path)).get_alias("default") == "fn-deploy-abc123"

    store.clear_alias("default")
    assert store.get_alias("default") is None


def test_file_store_rejects_corrupt_file(tmp_path) -> None:  # noqa: ANN001
    (tmp_path / "demo.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError):
        FileStateStore(str(tmp_path)).get("demo")


def test_open_state_store_uses_local_dir(tmp_path) -> None:  # noqa: ANN001
    store = open_state_store(DeploySettings(state_dir="state"), base_dir=str(tmp_path))

    assert isinstance(store, FileStateStore)
    assert store.root == os.path.join(str(tmp_path), "state")


# -----------------------------
# GCS (fake client)
# -----------------------------
class _FakeBlob:
    def __init__(self, bucket: "_FakeBucket", name: str) -> None:
        self._bucket = bucket
        self.name = name

    @property
    def generation(self) -> int:
        return self._bucket.objects[self.name][1]

    def download_as_bytes(self) -> bytes:
        return self._bucket.objects[self.name][0]

    def upload_from_string(self, data: str, content_type: str, if_generation_match: int) -> None:
        self._bucket.check(self.name, if_generation_match)
        current = self._bucket.objects.get(self.name, (b"", 0))[1]
        self._bucket.objects[self.name] = (data.encode("utf-8"), current + 1)

    def delete(self, if_generation_match: int) -> None:
        self._bucket.check(self.name, if_generation_match)
        del self._bucket.objects[self.name]


class _FakeBucket:
    def __init__(self) -> None:
        self.objects: Dict[str, tuple] = {}
        self.conflicts = 0

    def check(self, name: str, generation: int) -> None:
        if self.conflicts:
            self.conflicts -= 1
            raise PreconditionFailed("generation mismatch")
        if self.objects.get(name, (b"", 0))[1] != generation:
            raise PreconditionFailed("generation mismatch")

    def get_blob(self, name: str) -> Optional[_FakeBlob]:
        return _FakeBlob(self, name) if name in self.objects else None

    def blob(self, name: str) -> _FakeBlob:
        return _FakeBlob(self, name)


class _FakeClient:
    def __init__(self) -> None:
        self.bucket_obj = _FakeBucket()

    def bucket(self, name: str) -> _FakeBucket:
        return self.bucket_obj


def test_gcs_store_put_get_delete() -> None:
    client = _FakeClient()
    store = GcsStateStore("state-bucket", prefix="fndeploy", client=client)  # type: ignore[arg-type]

    store.put("demo", "function", {"type": "function"})

    assert store.get("demo") == {"function": {"type": "function"}}
    raw = client.bucket_obj.objects["fndeploy/demo.json"][0]
    assert json.loads(raw) == {"function": {"type": "function"}}

    store.delete("demo", "function")
    assert "fndeploy/demo.json" not in client.bucket_obj.objects


def test_gcs_store_retries_on_concurrent_write() -> None:
    client = _FakeClient()
    store = GcsStateStore("state-bucket", client=client)  # type: ignore[arg-type]
    client.bucket_obj.conflicts = 2

    store.set_alias("default", "demo")

    assert store.get_alias("default") == "demo"


def test_gcs_store_gives_up_after_repeated_conflicts() -> None:
    client = _FakeClient()
    store = GcsStateStore("state-bucket", client=client)  # type: ignore[arg-type]
    client.bucket_obj.conflicts = GcsStateStore.MAX_WRITE_ATTEMPTS

    with pytest.raises(StateStoreError):
        store.put("demo", "function", {})


# -----------------------------
# lock
# -----------------------------
def test_file_lock_excludes_other_store_instances(tmp_path) -> None:  # noqa: ANN001
    first = FileStateStore(str(tmp_path))
    second = FileStateStore(str(tmp_path), lock_timeout=0)

    with first.lock("demo"):
        assert (tmp_path / "demo.lock").exists()
        with pytest.raises(StateStoreError) as excinfo:
            with second.lock("demo"):
                pass
        assert "demo.lock" in str(excinfo.value)

        # 다른 배포는 막지 않는다.
        with second.lock("other"):
            pass

    assert not (tmp_path / "demo.lock").exists()
    with second.lock("demo"):
        pass


def test_file_lock_is_reentrant_and_released_on_error(tmp_path) -> None:  # noqa: ANN001
    store = FileStateStore(str(tmp_path), lock_timeout=0)

    with pytest.raises(RuntimeError):
        with store.lock("demo"):
            with store.lock("demo"):
                assert (tmp_path / "demo.lock").exists()
            assert (tmp_path / "demo.lock").exists()
            raise RuntimeError("boom")

    assert not (tmp_path / "demo.lock").exists()


def test_file_lock_waits_for_release(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    store = FileStateStore(str(tmp_path), lock_timeout=5, poll_interval=0)
    (tmp_path / "demo.lock").write_text("{}", encoding="utf-8")
    original = store._acquire
    attempts = []

    def acquire_after_release(deployment_id: str) -> None:
        attempts.append(deployment_id)
        if len(attempts) == 2:
            os.remove(tmp_path / "demo.lock")
        original(deployment_id)

    monkeypatch.setattr(store, "_acquire", acquire_after_release)

    with store.lock("demo"):
        assert len(attempts) == 2

    assert not (tmp_path / "demo.lock").exists()


def test_gcs_lock_conflict_and_release() -> None:
    client = _FakeClient()
    first = GcsStateStore("state-bucket", client=client)  # type: ignore[arg-type]
    second = GcsStateStore("state-bucket", client=client, lock_timeout=0)  # type: ignore[arg-type]

    with first.lock("demo"):
        assert "fndeploy/demo.lock" in client.bucket_obj.objects
        with pytest.raises(StateStoreError) as excinfo:
            with second.lock("demo"):
                pass
        assert "gs://state-bucket/fndeploy/demo.lock" in str(excinfo.value)

    assert "fndeploy/demo.lock" not in client.bucket_obj.objects
    with second.lock("demo"):
        second.put("demo", "function", {"type": "function"})
    assert set(client.bucket_obj.objects) == {"fndeploy/demo.json"}


def test_open_state_store_passes_lock_timeout(tmp_path) -> None:  # noqa: ANN001
    store = open_state_store(DeploySettings(state_dir="state", lock_timeout=5.0), base_dir=str(tmp_path))

    assert store.lock_timeout == 5.0
