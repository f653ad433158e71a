from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from .logging_utils import clip, get_logger


logger = get_logger(__name__)


class CommandError(RuntimeError):
    """
    외부 명령 실행 실패.

    returncode 가 None 이면 명령을 시작하지 못했거나(미설치) timeout 이다.
    """

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 300.0,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stdout/stderr 를 캡처하여 실패 시 일부를 에러 메시지에 포함
    - 명령 미설치/timeout/비정상 종료는 모두 CommandError 로 래핑
    """
    shown = " ".join(cmd)
    logger.info("명령 실행: %s", shown)
    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        raise CommandError(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (tccli 가 설치되어 있는지 확인하세요)",
            cmd=cmd,
        ) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {shown}",
            cmd=cmd,
            timed_out=True,
        ) from e
    except subprocess.CalledProcessError as e:
        stdout = (e.stdout or "").strip()
        stderr = (e.stderr or "").strip()
        detail = ""
        if stderr:
            detail = "\nstderr:\n" + clip(stderr)
        elif stdout:
            detail = "\nstdout:\n" + clip(stdout)
        raise CommandError(
            f"명령 실행 실패: {shown} (exit={e.returncode}){detail}",
            cmd=cmd,
            returncode=e.returncode,
            stdout=stdout,
            stderr=stderr,
        ) from e

    if result.stdout:
        logger.debug("명령 stdout: %s", clip(result.stdout))
    if result.stderr:
        logger.debug("명령 stderr: %s", clip(result.stderr))
    return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")
