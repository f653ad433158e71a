"""
errors
------

fn_deploy_kit 전반에서 사용하는 예외 계층.

입력 검증/그래프 오류는 프로바이더 호출 전에 발생하고,
ProviderError 는 transient 여부로 재시도 가능성을 구분한다.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DeployKitError(Exception):
    """fn_deploy_kit 의 모든 예외의 베이스."""


class ValidationError(DeployKitError):
    """입력 설정이 잘못되었거나 필수 파일이 없는 경우."""


class CycleError(DeployKitError):
    """리소스 의존 관계에 순환이 있는 경우."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("리소스 의존성에 순환이 있습니다: " + " -> ".join(self.cycle))


class StateStoreError(DeployKitError):
    """상태 저장소 읽기/쓰기 실패."""


class ProviderError(DeployKitError):
    """
    프로바이더(클라우드 백엔드) 호출 실패.

    transient=True 이면 호출자 레벨에서 재시도해 볼 수 있는 오류이다.
    code 는 백엔드가 돌려준 오류 코드(있다면)이다.
    partial_state 는 실패 전까지 실제로 만들어진 리소스 정보로, 엔진이 기록해 두었다가
    다음 apply 의 prior_state 로 넘겨준다.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        code: Optional[str] = None,
        resource: Optional[str] = None,
        partial_state: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.code = code
        self.resource = resource
        self.partial_state = partial_state

    @property
    def is_not_found(self) -> bool:
        return bool(self.code) and "NotFound" in (self.code or "")


class DeploymentError(DeployKitError):
    """
    apply 도중 일부 리소스만 적용된 상태에서 실패한 경우.

    succeeded 에는 적용이 끝난 리소스의 outputs 가 들어 있고,
    이 리소스들의 상태는 이미 저장소에 기록되어 있다.
    (상태 기록 자체가 실패한 경우에는 failed_resource 도 succeeded 에 들어 있다)
    """

    def __init__(
        self,
        deployment_id: str,
        *,
        succeeded: Dict[str, Dict[str, Any]],
        failed_resource: str,
        cause: BaseException,
        pending: List[str],
    ) -> None:
        self.deployment_id = deployment_id
        self.succeeded = dict(succeeded)
        self.failed_resource = failed_resource
        self.cause = cause
        self.pending = list(pending)
        done = ", ".join(self.succeeded) or "(none)"
        super().__init__(
            f"배포 실패: {deployment_id} / {failed_resource}: {cause} "
            f"(적용 완료: {done})"
        )

    @property
    def transient(self) -> bool:
        return isinstance(self.cause, ProviderError) and self.cause.transient


class TeardownErrorList(DeployKitError):
    """best-effort 삭제에서 하나 이상의 리소스 삭제가 실패한 경우."""

    def __init__(
        self,
        deployment_id: str,
        *,
        failures: Dict[str, BaseException],
        removed: List[str],
    ) -> None:
        self.deployment_id = deployment_id
        self.failures = dict(failures)
        self.removed = list(removed)
        detail = "; ".join(f"{name}: {err}" for name, err in self.failures.items())
        super().__init__(f"삭제 실패 ({len(self.failures)}건): {deployment_id} - {detail}")

    @property
    def transient(self) -> bool:
        return all(
            isinstance(err, ProviderError) and err.transient
            for err in self.failures.values()
        )


class CancelledError(DeployKitError):
    """
    취소 요청으로 이후 프로바이더 호출을 중단한 경우.

    remove 도중 취소되면 그때까지 모인 삭제 실패가 failures 에 남는다.
    """

    def __init__(
        self,
        deployment_id: str,
        completed: List[str],
        failures: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        self.deployment_id = deployment_id
        self.completed = list(completed)
        self.failures = dict(failures or {})
        done = ", ".join(self.completed) or "(none)"
        message = f"작업이 취소되었습니다: {deployment_id} (완료된 리소스: {done})"
        if self.failures:
            detail = "; ".join(f"{name}: {err}" for name, err in self.failures.items())
            message += f" / 삭제 실패: {detail}"
        super().__init__(message)
