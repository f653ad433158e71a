"""
graph
-----

ResourceSpec 들의 의존 관계로부터 배포 순서(DeploymentPlan)를 만든다.

깊이 우선 위상 정렬 + 3색 마킹(unvisited / in-progress / done)으로
순환을 감지한다. 리소스 수에 대한 특수 처리는 없다.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from .errors import CycleError, ValidationError
from .logging_utils import get_logger
from .models import DeploymentPlan, ResourceSpec


logger = get_logger(__name__)

_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


def build_plan(deployment_id: str, specs: Iterable[ResourceSpec]) -> DeploymentPlan:
    """
    위상 정렬된 DeploymentPlan 을 돌려준다.

    Raises:
        ValidationError: 리소스 이름 중복, 존재하지 않는 리소스 참조
        CycleError: 의존 관계에 순환이 있는 경우
    """
    spec_list = list(specs)
    by_name: Dict[str, ResourceSpec] = {}
    for spec in spec_list:
        if spec.name in by_name:
            raise ValidationError(f"리소스 이름이 중복되었습니다: {spec.name}")
        by_name[spec.name] = spec

    edges: Dict[str, List[str]] = {}
    for spec in spec_list:
        deps = spec.dependencies()
        unknown = [d for d in deps if d not in by_name]
        if unknown:
            raise ValidationError(
                f"{spec.name} 가 존재하지 않는 리소스를 참조합니다: {', '.join(unknown)}"
            )
        edges[spec.name] = deps

    color: Dict[str, int] = {name: _UNVISITED for name in by_name}
    ordered: List[ResourceSpec] = []
    path: List[str] = []

    def visit(name: str) -> None:
        if color[name] == _DONE:
            return
        if color[name] == _IN_PROGRESS:
            start = path.index(name)
            raise CycleError(path[start:] + [name])

        color[name] = _IN_PROGRESS
        path.append(name)
        for dep in edges[name]:
            visit(dep)
        path.pop()
        color[name] = _DONE
        ordered.append(by_name[name])

    for spec in spec_list:
        visit(spec.name)

    logger.debug("배포 순서 (%s): %s", deployment_id, [s.name for s in ordered])
    return DeploymentPlan(deployment_id=deployment_id, specs=tuple(ordered))


def plan_from_state(deployment_id: str, records: Mapping[str, Mapping[str, Any]]) -> DeploymentPlan:
    """
    저장된 상태 레코드만으로 계획을 다시 만든다. (teardown 용)

    레코드가 참조하는 리소스가 이미 상태에서 사라졌다면 그 의존은 무시한다.
    """
    specs: List[ResourceSpec] = []
    for name, record in records.items():
        if "type" not in record:
            raise ValidationError(f"상태 레코드에 type 이 없습니다: {deployment_id}/{name}")
        deps = [d for d in record.get("depends_on", []) if d in records]
        specs.append(ResourceSpec(type=record["type"], name=name, depends_on=tuple(deps)))
    return build_plan(deployment_id, specs)
