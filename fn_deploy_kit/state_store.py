"""
state_store
-----------

배포 상태(리소스별 마지막 적용 결과)를 보관하는 저장소.

- InMemoryStateStore : 테스트/임베딩 용
- FileStateStore     : 로컬 디렉토리에 배포별 JSON 파일로 보관
- GcsStateStore      : GCS 버킷에 보관 (팀/CI 에서 상태 공유)

같은 deployment_id 에 대한 apply/remove 는 lock() 으로 직렬화한다.
"""

from __future__ import annotations

import copy
import json
import os
import re
import socket
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from google.api_core.exceptions import NotFound, PreconditionFailed
from google.cloud import storage
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from .config import DeploySettings
from .errors import StateStoreError, ValidationError
from .logging_utils import get_logger


logger = get_logger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,59}$")


def validate_deployment_id(deployment_id: str) -> str:
    if not deployment_id or not _ID_PATTERN.match(deployment_id):
        raise ValidationError(f"배포 이름으로 사용할 수 없는 값입니다: {deployment_id!r}")
    return deployment_id


class _KeyLocks:
    """deployment_id 별 재진입 가능 lock 모음."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


class _LockHeld(Exception):
    """다른 프로세스가 lock 을 잡고 있는 경우. (내부 재시도용)"""

    def __init__(self, location: str, owner: Any = None) -> None:
        self.location = location
        self.owner = owner
        super().__init__(f"{location} (owner={owner})")


def _lock_owner() -> Dict[str, Any]:
    return {"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()}


class StateStore(ABC):
    """
    lock() 은 같은 프로세스 안에서는 RLock 으로, 프로세스 사이에서는
    저장소별 lock 파일/객체(_acquire/_release)로 deployment_id 를 직렬화한다.
    """

    def __init__(self, *, lock_timeout: float = 60.0, poll_interval: float = 0.5) -> None:
        self._key_locks = _KeyLocks()
        self._lock_depth: Dict[str, int] = {}
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    @abstractmethod
    def get(self, deployment_id: str) -> Dict[str, Any]:
        """deployment_id 의 리소스별 레코드. 없으면 빈 dict."""

    @abstractmethod
    def put(self, deployment_id: str, resource_name: str, record: Any) -> None:
        ...

    @abstractmethod
    def delete(self, deployment_id: str, resource_name: str) -> None:
        ...

    @abstractmethod
    def get_alias(self, instance: str) -> Optional[str]:
        """instance 이름으로 마지막에 사용한 deployment_id 를 찾는다."""

    @abstractmethod
    def set_alias(self, instance: str, deployment_id: str) -> None:
        ...

    @abstractmethod
    def clear_alias(self, instance: str) -> None:
        ...

    def _acquire(self, deployment_id: str) -> None:
        """프로세스 간 lock 을 잡는다. 이미 잡혀 있으면 _LockHeld."""

    def _release(self, deployment_id: str) -> None:
        ...

    def _acquire_waiting(self, deployment_id: str) -> None:
        def _log_wait(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info("배포 lock 대기 중: %s (%s)", deployment_id, exc)

        retrying = Retrying(
            retry=retry_if_exception_type(_LockHeld),
            stop=stop_after_delay(max(self.lock_timeout, 0)),
            wait=wait_fixed(self.poll_interval),
            before_sleep=_log_wait,
            reraise=True,
        )
        try:
            retrying(self._acquire, deployment_id)
        except _LockHeld as e:
            raise StateStoreError(
                f"다른 작업이 배포 lock 을 잡고 있습니다: {deployment_id} ({e}). "
                f"비정상 종료로 남은 lock 이라면 {e.location} 을 지운 뒤 다시 실행하세요."
            ) from e

    @contextmanager
    def lock(self, deployment_id: str) -> Iterator[None]:
        with self._key_locks.get(deployment_id):
            depth = self._lock_depth.get(deployment_id, 0)
            if depth == 0:
                self._acquire_waiting(deployment_id)
            self._lock_depth[deployment_id] = depth + 1
            try:
                yield
            finally:
                self._lock_depth[deployment_id] -= 1
                if self._lock_depth[deployment_id] == 0:
                    del self._lock_depth[deployment_id]
                    self._release(deployment_id)


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, Dict[str, Any]] = {}
        self._aliases: Dict[str, str] = {}
        self._mutex = threading.Lock()

    def get(self, deployment_id: str) -> Dict[str, Any]:
        with self._mutex:
            return copy.deepcopy(self._data.get(deployment_id, {}))

    def put(self, deployment_id: str, resource_name: str, record: Any) -> None:
        with self._mutex:
            self._data.setdefault(deployment_id, {})[resource_name] = copy.deepcopy(record)

    def delete(self, deployment_id: str, resource_name: str) -> None:
        with self._mutex:
            records = self._data.get(deployment_id)
            if not records:
                return
            records.pop(resource_name, None)
            if not records:
                del self._data[deployment_id]

    def get_alias(self, instance: str) -> Optional[str]:
        with self._mutex:
            return self._aliases.get(instance)

    def set_alias(self, instance: str, deployment_id: str) -> None:
        with self._mutex:
            self._aliases[instance] = deployment_id

    def clear_alias(self, instance: str) -> None:
        with self._mutex:
            self._aliases.pop(instance, None)


class FileStateStore(StateStore):
    """
    root 디렉토리 아래에 <deployment_id>.json 으로 상태를 기록한다.

    쓰기는 임시 파일 + os.replace 로 원자적으로 교체한다.
    """

    ALIAS_FILE = "_aliases.json"

    def __init__(self, root: str, *, lock_timeout: float = 60.0, poll_interval: float = 0.5) -> None:
        super().__init__(lock_timeout=lock_timeout, poll_interval=poll_interval)
        self.root = root
        self._mutex = threading.Lock()

    def _path(self, deployment_id: str) -> str:
        return os.path.join(self.root, f"{validate_deployment_id(deployment_id)}.json")

    def _lock_path(self, deployment_id: str) -> str:
        return os.path.join(self.root, f"{validate_deployment_id(deployment_id)}.lock")

    def _acquire(self, deployment_id: str) -> None:
        path = self._lock_path(deployment_id)
        os.makedirs(self.root, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    owner = f.read().strip()
            except OSError:
                owner = None
            raise _LockHeld(path, owner)
        except OSError as e:
            raise StateStoreError(f"lock 파일을 만들 수 없습니다: {path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(_lock_owner(), f)
        logger.debug("배포 lock 획득: %s", path)

    def _release(self, deployment_id: str) -> None:
        path = self._lock_path(deployment_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning("lock 파일이 이미 없습니다: %s", path)

    def _read(self, path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"상태 파일을 읽을 수 없습니다: {path}: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError(f"상태 파일 형식이 올바르지 않습니다: {path}")
        return data

    def _write(self, path: str, data: Dict[str, Any]) -> None:
        os.makedirs(self.root, exist_ok=True)
        if not data:
            if os.path.exists(path):
                os.remove(path)
            return
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise StateStoreError(f"상태 파일을 쓸 수 없습니다: {path}: {e}") from e

    def get(self, deployment_id: str) -> Dict[str, Any]:
        with self._mutex:
            return self._read(self._path(deployment_id))

    def put(self, deployment_id: str, resource_name: str, record: Any) -> None:
        path = self._path(deployment_id)
        with self._mutex:
            data = self._read(path)
            data[resource_name] = record
            self._write(path, data)
        logger.debug("상태 기록: %s/%s -> %s", deployment_id, resource_name, path)

    def delete(self, deployment_id: str, resource_name: str) -> None:
        path = self._path(deployment_id)
        with self._mutex:
            data = self._read(path)
            if resource_name not in data:
                return
            del data[resource_name]
            self._write(path, data)

    def _aliases(self) -> Dict[str, str]:
        return self._read(os.path.join(self.root, self.ALIAS_FILE))

    def get_alias(self, instance: str) -> Optional[str]:
        with self._mutex:
            return self._aliases().get(instance)

    def set_alias(self, instance: str, deployment_id: str) -> None:
        validate_deployment_id(deployment_id)
        with self._mutex:
            aliases = self._aliases()
            aliases[instance] = deployment_id
            self._write(os.path.join(self.root, self.ALIAS_FILE), aliases)

    def clear_alias(self, instance: str) -> None:
        with self._mutex:
            aliases = self._aliases()
            if aliases.pop(instance, None) is not None:
                self._write(os.path.join(self.root, self.ALIAS_FILE), aliases)


class GcsStateStore(StateStore):
    """
    GCS 버킷의 <prefix>/<deployment_id>.json 에 상태를 기록한다.

    다른 프로세스와의 동시 쓰기는 if_generation_match 로 감지하고 재시도한다.
    """

    MAX_WRITE_ATTEMPTS = 5
    ALIAS_OBJECT = "_aliases.json"

    def __init__(
        self,
        bucket_name: str,
        prefix: str = "fndeploy",
        project: Optional[str] = None,
        client: Optional[storage.Client] = None,
        *,
        lock_timeout: float = 60.0,
        poll_interval: float = 0.5,
    ) -> None:
        super().__init__(lock_timeout=lock_timeout, poll_interval=poll_interval)
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self._client = client or storage.Client(project=project)
        self._bucket = self._client.bucket(bucket_name)
        self._lock_generations: Dict[str, Optional[int]] = {}

    def _object_name(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _lock_object(self, deployment_id: str) -> str:
        return self._object_name(f"{validate_deployment_id(deployment_id)}.lock")

    def _acquire(self, deployment_id: str) -> None:
        object_name = self._lock_object(deployment_id)
        blob = self._bucket.blob(object_name)
        try:
            # generation 0 조건: 객체가 없을 때만 생성된다.
            blob.upload_from_string(
                json.dumps(_lock_owner()),
                content_type="application/json",
                if_generation_match=0,
            )
        except PreconditionFailed:
            raise _LockHeld(f"gs://{self.bucket_name}/{object_name}")
        self._lock_generations[deployment_id] = blob.generation
        logger.debug("배포 lock 획득: gs://%s/%s", self.bucket_name, object_name)

    def _release(self, deployment_id: str) -> None:
        object_name = self._lock_object(deployment_id)
        generation = self._lock_generations.pop(deployment_id, None)
        try:
            self._bucket.blob(object_name).delete(if_generation_match=generation)
        except (NotFound, PreconditionFailed):
            logger.warning("lock 객체가 이미 없거나 바뀌었습니다: gs://%s/%s", self.bucket_name, object_name)

    def _load(self, object_name: str) -> tuple[Dict[str, Any], int]:
        blob = self._bucket.get_blob(object_name)
        if blob is None:
            return {}, 0
        try:
            raw = blob.download_as_bytes()
        except NotFound:
            return {}, 0
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise StateStoreError(
                f"상태 객체 형식이 올바르지 않습니다: gs://{self.bucket_name}/{object_name}"
            ) from e
        return data, int(blob.generation)

    def _update(self, object_name: str, mutate) -> None:  # noqa: ANN001
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            data, generation = self._load(object_name)
            if not mutate(data):
                return
            blob = self._bucket.blob(object_name)
            try:
                if data:
                    blob.upload_from_string(
                        json.dumps(data, ensure_ascii=False, sort_keys=True),
                        content_type="application/json",
                        if_generation_match=generation,
                    )
                elif generation:
                    blob.delete(if_generation_match=generation)
                return
            except (PreconditionFailed, NotFound):
                logger.warning(
                    "상태 객체가 동시에 변경되었습니다. 다시 시도합니다 (%d/%d): %s",
                    attempt,
                    self.MAX_WRITE_ATTEMPTS,
                    object_name,
                )
        raise StateStoreError(
            f"상태 객체 갱신이 계속 충돌합니다: gs://{self.bucket_name}/{object_name}"
        )

    def get(self, deployment_id: str) -> Dict[str, Any]:
        data, _ = self._load(self._object_name(f"{validate_deployment_id(deployment_id)}.json"))
        return data

    def put(self, deployment_id: str, resource_name: str, record: Any) -> None:
        def _mutate(data: Dict[str, Any]) -> bool:
            data[resource_name] = record
            return True

        self._update(self._object_name(f"{validate_deployment_id(deployment_id)}.json"), _mutate)

    def delete(self, deployment_id: str, resource_name: str) -> None:
        def _mutate(data: Dict[str, Any]) -> bool:
            return data.pop(resource_name, None) is not None

        self._update(self._object_name(f"{validate_deployment_id(deployment_id)}.json"), _mutate)

    def get_alias(self, instance: str) -> Optional[str]:
        data, _ = self._load(self._object_name(self.ALIAS_OBJECT))
        return data.get(instance)

    def set_alias(self, instance: str, deployment_id: str) -> None:
        validate_deployment_id(deployment_id)

        def _mutate(data: Dict[str, Any]) -> bool:
            if data.get(instance) == deployment_id:
                return False
            data[instance] = deployment_id
            return True

        self._update(self._object_name(self.ALIAS_OBJECT), _mutate)

    def clear_alias(self, instance: str) -> None:
        def _mutate(data: Dict[str, Any]) -> bool:
            return data.pop(instance, None) is not None

        self._update(self._object_name(self.ALIAS_OBJECT), _mutate)


def open_state_store(settings: DeploySettings, base_dir: str = ".") -> StateStore:
    if settings.state_backend == "gcs":
        if not settings.state_bucket:
            raise ValueError("FNDEPLOY_STATE_BACKEND=gcs 이면 FNDEPLOY_STATE_BUCKET 이 필요합니다.")
        logger.info("GCS 상태 저장소 사용: gs://%s/%s", settings.state_bucket, settings.state_prefix)
        return GcsStateStore(
            settings.state_bucket,
            prefix=settings.state_prefix,
            project=settings.gcp_project_id,
            lock_timeout=settings.lock_timeout,
        )

    root = settings.state_dir
    if not os.path.isabs(root):
        root = os.path.join(base_dir, root)
    logger.debug("로컬 상태 저장소 사용: %s", root)
    return FileStateStore(root, lock_timeout=settings.lock_timeout)
