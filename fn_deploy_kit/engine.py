"""
engine
------

배포 계획을 따라 프로바이더를 호출하고 상태를 기록하는 오케스트레이터.

상태 전이:
    IDLE -> PLANNING -> APPLYING -> SETTLED
    IDLE -> PLANNING -> APPLYING -> ROLLING_BACK -> FAILED
    IDLE -> REMOVING -> REMOVED (일부 실패 시 FAILED)

- apply 는 계획 순서대로 하나씩 호출하고, 각 리소스 상태를 저장한 뒤 다음으로 넘어간다.
- 실패 시 이미 적용된 리소스를 지우지 않는다. 상태가 남아 있으므로 재실행하면 이어서 진행한다.
- remove 는 역순으로 모든 리소스를 시도하고 실패는 모아서 보고한다.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import (
    CancelledError,
    DeployKitError,
    DeploymentError,
    ProviderError,
    StateStoreError,
    TeardownErrorList,
)
from .graph import build_plan, plan_from_state
from .logging_utils import get_logger
from .models import DeploymentPlan, DeploymentResult, ResourceSpec, TeardownResult
from .providers import ProviderRegistry
from .state_store import StateStore


logger = get_logger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    APPLYING = "applying"
    SETTLED = "settled"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"
    REMOVING = "removing"
    REMOVED = "removed"


def default_protocol(protocols: Iterable[str]) -> str:
    if "https" in [p.lower() for p in protocols]:
        return "https"
    return "http"


def _envelope(spec: ResourceSpec, outputs: Dict[str, Any], state: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": spec.type,
        "depends_on": spec.dependencies(),
        "state": state,
        "outputs": outputs,
    }


class Orchestrator:
    """
    하나의 배포(deployment_id)에 대한 apply/remove 를 수행한다.

    cancel_event 가 set 되면 다음 프로바이더 호출 전에 CancelledError 로 중단한다.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.cancel_event = cancel_event or threading.Event()
        self.phase = Phase.IDLE

    def _check_cancelled(
        self,
        deployment_id: str,
        completed: List[str],
        failures: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        if self.cancel_event.is_set():
            logger.warning("취소 요청을 받아 중단합니다: %s (완료: %s)", deployment_id, completed)
            self.phase = Phase.FAILED
            raise CancelledError(deployment_id, completed, failures)

    def _failed(
        self,
        plan: DeploymentPlan,
        index: int,
        succeeded: Dict[str, Dict[str, Any]],
        cause: BaseException,
    ) -> DeploymentError:
        spec = plan.specs[index]
        self.phase = Phase.ROLLING_BACK
        logger.error(
            "리소스 적용 실패: %s (%s) - 적용 완료된 리소스는 유지합니다: %s",
            spec.name,
            cause,
            list(succeeded) or "(none)",
        )
        if not isinstance(cause, DeployKitError):
            logger.debug("예외 상세", exc_info=cause)
        self.phase = Phase.FAILED
        return DeploymentError(
            plan.deployment_id,
            succeeded=succeeded,
            failed_resource=spec.name,
            cause=cause,
            pending=[s.name for s in plan.specs[index + 1:]],
        )

    def _record_partial(self, deployment_id: str, spec: ResourceSpec, err: ProviderError) -> None:
        """실패한 프로바이더가 만들어 둔 리소스를 기록해 다음 apply 가 이어받게 한다."""
        if not err.partial_state:
            return
        try:
            self.store.put(deployment_id, spec.name, _envelope(spec, {}, err.partial_state))
        except StateStoreError as e:
            logger.error("부분 적용 상태를 기록하지 못했습니다: %s/%s (%s)", deployment_id, spec.name, e)
            return
        logger.warning("부분 적용 상태를 기록했습니다: %s/%s %s", deployment_id, spec.name, err.partial_state)

    def plan(self, deployment_id: str, specs: Iterable[ResourceSpec]) -> DeploymentPlan:
        self.phase = Phase.PLANNING
        try:
            plan = build_plan(deployment_id, specs)
            for spec in plan:
                self.registry.get(spec.type)
        except Exception:
            self.phase = Phase.FAILED
            raise
        return plan

    def apply(self, plan: DeploymentPlan) -> DeploymentResult:
        deployment_id = plan.deployment_id
        outputs: Dict[str, Dict[str, Any]] = {}

        with self.store.lock(deployment_id):
            self.phase = Phase.APPLYING
            prior = self.store.get(deployment_id)
            logger.info("배포 시작: %s (%s)", deployment_id, " -> ".join(plan.names))

            for index, spec in enumerate(plan):
                self._check_cancelled(deployment_id, list(outputs))

                provider = self.registry.get(spec.type)
                record = prior.get(spec.name) or {}
                prior_state = record.get("state") if record.get("type") == spec.type else None

                try:
                    resolved = spec.resolve(outputs)
                    logger.info("리소스 적용: %s (%s)", spec.name, spec.type)
                    resource_outputs, new_state = provider.apply(resolved, prior_state)
                except Exception as e:  # noqa: BLE001
                    if isinstance(e, ProviderError):
                        self._record_partial(deployment_id, spec, e)
                    raise self._failed(plan, index, outputs, e) from e

                try:
                    self.store.put(deployment_id, spec.name, _envelope(spec, resource_outputs, new_state))
                except Exception as e:  # noqa: BLE001
                    # 리소스는 이미 만들어졌으므로 결과에는 포함시킨다.
                    applied = dict(outputs, **{spec.name: resource_outputs})
                    raise self._failed(plan, index, applied, e) from e
                outputs[spec.name] = resource_outputs

            orphans = [name for name in prior if plan.get(name) is None]
            if orphans:
                logger.warning(
                    "현재 설정에 없는 리소스가 상태에 남아 있습니다 (remove 시 삭제됨): %s", orphans
                )
            state = self.store.get(deployment_id)

        self.phase = Phase.SETTLED
        logger.info("배포 완료: %s", deployment_id)
        return DeploymentResult(
            deployment_id=deployment_id,
            resources=outputs,
            state=state,
            orphans=orphans,
        )

    def remove(self, deployment_id: str) -> TeardownResult:
        """
        저장된 상태를 기준으로 역순 삭제한다.

        Raises:
            TeardownErrorList: 하나 이상의 리소스 삭제 실패 (나머지는 모두 시도됨)
        """
        removed: List[str] = []
        failures: Dict[str, BaseException] = {}

        with self.store.lock(deployment_id):
            self.phase = Phase.REMOVING
            records = self.store.get(deployment_id)
            if not records:
                logger.info("삭제할 리소스 상태가 없습니다: %s", deployment_id)
                self.phase = Phase.REMOVED
                return TeardownResult(deployment_id=deployment_id)

            plan = plan_from_state(deployment_id, records)
            order = list(reversed(plan.names))
            logger.info("삭제 시작: %s (%s)", deployment_id, " -> ".join(order))

            for name in order:
                self._check_cancelled(deployment_id, removed, failures)
                record = records[name]
                try:
                    provider = self.registry.get(record["type"])
                    logger.info("리소스 삭제: %s (%s)", name, record["type"])
                    provider.remove(record.get("state") or {})
                except Exception as e:  # noqa: BLE001
                    failures[name] = e
                    logger.error("리소스 삭제 실패: %s (%s) - 나머지 리소스는 계속 삭제합니다.", name, e)
                    continue
                self.store.delete(deployment_id, name)
                removed.append(name)

        if failures:
            self.phase = Phase.FAILED
            raise TeardownErrorList(deployment_id, failures=failures, removed=removed)

        self.phase = Phase.REMOVED
        logger.info("삭제 완료: %s", deployment_id)
        return TeardownResult(deployment_id=deployment_id, removed=removed)
