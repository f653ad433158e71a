"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 fn_deploy_kit 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.

공용 fixture:
- FakeProvider : 호출 기록을 남기는 메모리 프로바이더 (engine/orchestrator 테스트용)
- app_dir      : app.js 가 들어 있는 임시 소스 디렉토리
"""

from __future__ import annotations

import os
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


class FakeProvider:
    """
    apply 할 때마다 같은 이름의 리소스를 재사용하는 메모리 프로바이더.

    fail_on_apply / fail_on_remove 에 리소스 이름 -> 예외를 넣어 실패를 흉내낸다.
    """

    def __init__(self, resource_type: str, calls: Optional[List[Tuple[str, str]]] = None) -> None:
        self.resource_type = resource_type
        self.calls: List[Tuple[str, str]] = calls if calls is not None else []
        self.live: Dict[str, Dict[str, Any]] = {}
        self.created = 0
        self.applied_configs: List[Dict[str, Any]] = []
        self.fail_on_apply: Dict[str, BaseException] = {}
        self.fail_on_remove: Dict[str, BaseException] = {}
        self.outputs_fn: Optional[Callable[[str, Dict[str, Any]], Dict[str, Any]]] = None

    def apply(self, spec, prior_state):  # noqa: ANN001, ANN201
        self.calls.append(("apply", spec.name))
        if spec.name in self.fail_on_apply:
            raise self.fail_on_apply.pop(spec.name)
        conf = spec.config_dict()
        self.applied_configs.append(conf)
        if not prior_state or prior_state.get("id") not in self.live:
            self.created += 1
            resource_id = f"{spec.name}-{self.created}"
        else:
            resource_id = prior_state["id"]
        self.live[resource_id] = conf
        outputs = {"id": resource_id}
        if self.outputs_fn is not None:
            outputs.update(self.outputs_fn(spec.name, conf))
        return outputs, {"id": resource_id}

    def remove(self, prior_state):  # noqa: ANN001, ANN201
        resource_id = prior_state.get("id")
        name = resource_id.rsplit("-", 1)[0] if resource_id else ""
        self.calls.append(("remove", name))
        if name in self.fail_on_remove:
            raise self.fail_on_remove.pop(name)
        self.live.pop(resource_id, None)


@pytest.fixture
def app_dir(tmp_path):  # noqa: ANN001, ANN201
    src = tmp_path / "app"
    src.mkdir()
    (src / "app.js").write_text("module.exports = {};\n", encoding="utf-8")
    (src / "package.json").write_text('{"name": "demo"}\n', encoding="utf-8")
    return src
