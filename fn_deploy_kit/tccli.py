"""
tccli
-----

Tencent Cloud CLI(tccli) 호출 래퍼.

요청 파라미터는 임시 JSON 파일로 만들어 --cli-input-json 으로 전달하고
(코드 zip 등 큰 값이 명령줄 길이 제한에 걸리지 않도록),
응답 JSON 을 dict 로 돌려준다. 실패는 ProviderError 로 변환한다.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from typing import Any, Callable, Dict, Optional

from .errors import ProviderError
from .logging_utils import get_logger
from .subprocess_utils import CommandError, RunResult, run_command


logger = get_logger(__name__)

# 재시도하면 성공할 수 있는 오류 코드(접두어)
TRANSIENT_CODE_PREFIXES = (
    "InternalError",
    "RequestLimitExceeded",
    "ResourceUnavailable",
    "ResourceInUse",
    "ClientNetworkError",
    "ServerNetworkError",
    "FailedOperation.FunctionStatusError",
)

_CODE_PATTERN = re.compile(r"code:\s*([A-Za-z0-9_.]+)")
_MESSAGE_PATTERN = re.compile(r"message:\s*(.+?)(?:\s+requestId:|$)", re.DOTALL)


def is_transient_code(code: Optional[str]) -> bool:
    return bool(code) and any(code.startswith(p) for p in TRANSIENT_CODE_PREFIXES)  # type: ignore[union-attr]


def _error_from_command(service: str, action: str, err: CommandError) -> ProviderError:
    text = f"{err.stderr}\n{err.stdout}"
    m = _CODE_PATTERN.search(text)
    code = m.group(1) if m else None
    msg_match = _MESSAGE_PATTERN.search(text)
    message = msg_match.group(1).strip() if msg_match else str(err)

    if err.timed_out:
        return ProviderError(f"{service}.{action} 시간 초과: {err}", transient=True, code=code)
    if err.returncode is None:
        # tccli 미설치 등: 재시도해도 소용 없음
        return ProviderError(str(err), transient=False, code=code)
    return ProviderError(
        f"{service}.{action} 실패 ({code or 'unknown'}): {message}",
        transient=is_transient_code(code),
        code=code,
    )


class TccliClient:
    def __init__(
        self,
        binary: str = "tccli",
        *,
        timeout: float = 300.0,
        runner: Callable[..., RunResult] = run_command,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self._runner = runner

    def call(self, service: str, action: str, params: Dict[str, Any], *, region: str) -> Dict[str, Any]:
        fd, path = tempfile.mkstemp(prefix=f"tccli-{action}-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(params, f, ensure_ascii=False)

            cmd = [
                self.binary,
                service,
                action,
                "--region",
                region,
                "--cli-input-json",
                f"file://{path}",
            ]
            try:
                result = self._runner(cmd, timeout=self.timeout)
            except CommandError as e:
                raise _error_from_command(service, action, e) from e
        finally:
            if os.path.exists(path):
                os.remove(path)

        return self._parse(service, action, result.stdout)

    @staticmethod
    def _parse(service: str, action: str, stdout: str) -> Dict[str, Any]:
        if not stdout.strip():
            return {}
        try:
            data = json.loads(stdout)
        except ValueError as e:
            raise ProviderError(f"{service}.{action} 응답을 해석할 수 없습니다: {stdout[:200]!r}") from e

        if isinstance(data, dict) and isinstance(data.get("Response"), dict):
            data = data["Response"]
        if isinstance(data, dict) and isinstance(data.get("Error"), dict):
            code = data["Error"].get("Code")
            raise ProviderError(
                f"{service}.{action} 실패 ({code}): {data['Error'].get('Message', '')}",
                transient=is_transient_code(code),
                code=code,
            )
        if not isinstance(data, dict):
            raise ProviderError(f"{service}.{action} 응답 형식이 올바르지 않습니다: {data!r}")
        return data
