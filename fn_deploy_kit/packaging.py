"""
packaging
---------

소스 디렉토리를 함수 코드 zip 으로 묶는다.

- exclude 패턴에 걸린 파일은 제외
- 상대 경로 include 패턴은 exclude 보다 우선
- 절대 경로 include 는 zip 최상위에 파일 이름 그대로 추가 (shim 파일)
"""

from __future__ import annotations

import io
import os
import zipfile
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Tuple

from .errors import ValidationError
from .logging_utils import get_logger


logger = get_logger(__name__)

SHIM_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "shims")
# 요청 어댑터 / 프로바이더 브릿지. 사용자 include/exclude 와 무관하게 항상 포함된다.
SHIM_FILES = [
    os.path.join(SHIM_DIR, "sls_handler.js"),
    os.path.join(SHIM_DIR, "sls_bridge.js"),
]
SHIM_HANDLER = "sls_handler.handler"


def matches(rel_path: str, pattern: str) -> bool:
    """
    rel_path(POSIX 상대 경로)가 glob 패턴에 해당하는지.

    "dir/**" 는 dir 자체와 그 아래 전체를 뜻한다.
    슬래시가 없는 패턴은 경로의 어느 구성요소와도 매칭된다.
    """
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    pattern = pattern.rstrip("/")
    if not pattern:
        return False

    if pattern.endswith("/**"):
        base = pattern[:-3]
        return rel_path == base or rel_path.startswith(base + "/") or fnmatch(rel_path, pattern)

    if fnmatch(rel_path, pattern):
        return True
    if "/" not in pattern:
        parts = rel_path.split("/")
        return any(fnmatch(part, pattern) for part in parts)
    return rel_path.startswith(pattern + "/")


def _walk(code_uri: str) -> Iterable[str]:
    for dirpath, dirnames, filenames in os.walk(code_uri):
        dirnames.sort()
        for filename in sorted(filenames):
            full = os.path.join(dirpath, filename)
            yield os.path.relpath(full, code_uri).replace(os.sep, "/")


def collect_files(code_uri: str, include: List[str], exclude: List[str]) -> List[Tuple[str, str]]:
    """
    zip 에 담을 (실제 경로, zip 내부 경로) 목록을 돌려준다.
    """
    if not os.path.isdir(code_uri):
        raise ValidationError(f"소스 디렉토리가 없습니다: {code_uri}")

    absolute_includes = [p for p in include if os.path.isabs(p)]
    relative_includes = [p for p in include if not os.path.isabs(p)]

    entries: Dict[str, str] = {}
    skipped = 0
    for rel in _walk(code_uri):
        excluded = any(matches(rel, p) for p in exclude)
        if excluded and not any(matches(rel, p) for p in relative_includes):
            skipped += 1
            continue
        entries[rel] = os.path.join(code_uri, rel)

    for path in absolute_includes:
        if not os.path.isfile(path):
            raise ValidationError(f"include 에 지정된 파일이 없습니다: {path}")
        entries[os.path.basename(path)] = path

    logger.debug("패키징 대상 %d개, 제외 %d개 (%s)", len(entries), skipped, code_uri)
    return [(src, arc) for arc, src in sorted(entries.items())]


def build_archive(code_uri: str, include: List[str], exclude: List[str]) -> bytes:
    files = collect_files(code_uri, include, exclude)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for src, arc in files:
            zf.write(src, arc)
    data = buf.getvalue()
    logger.info("코드 패키지 생성: %s (%d files, %d bytes)", code_uri, len(files), len(data))
    return data
