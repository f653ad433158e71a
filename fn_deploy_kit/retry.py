"""
retry
-----

호출자 레벨 재시도. 오케스트레이터 자체는 재시도하지 않으며,
여기서 transient 오류인 경우에만 전체 deploy/remove 를 다시 호출한다.
(프로바이더가 idempotent 하므로 이미 적용된 리소스는 중복 생성되지 않는다)
"""

from __future__ import annotations

from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import DeploymentError, ProviderError, TeardownErrorList
from .logging_utils import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (ProviderError, DeploymentError, TeardownErrorList)):
        return exc.transient
    return False


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("일시적 오류로 재시도합니다 (%d회차): %s", state.attempt_number, exc)


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    wait_min: float = 1.0,
    wait_max: float = 30.0,
) -> T:
    """
    fn 을 호출하고, transient 오류면 지수 백오프로 최대 attempts 번까지 시도한다.
    permanent 오류나 마지막 시도의 오류는 그대로 다시 던진다.
    """
    retrying = Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=2, min=wait_min, max=wait_max),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(fn)
