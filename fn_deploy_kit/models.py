"""
models
------

리소스 선언(ResourceSpec), 배포 계획(DeploymentPlan), 결과 타입 정의.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class OutputRef:
    """
    다른 리소스의 apply 결과(outputs)의 특정 키를 가리키는 참조.

    apply 직전에 실제 값으로 치환되며, 참조 자체가 의존 관계를 만든다.
    """

    resource: str
    key: str

    def __str__(self) -> str:
        return f"${{{self.resource}.{self.key}}}"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """_freeze 결과를 일반 dict/list 로 되돌린다. (프로바이더 전달용)"""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def find_refs(value: Any) -> Iterator[OutputRef]:
    if isinstance(value, OutputRef):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from find_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from find_refs(v)


@dataclass(frozen=True)
class ResourceSpec:
    """
    프로비저닝할 리소스 하나에 대한 선언.

    config 는 생성 시점에 깊은 복사 후 읽기 전용으로 고정된다.
    """

    type: str
    name: str
    config: Mapping[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "config", _freeze(copy.deepcopy(thaw(self.config))))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    def dependencies(self) -> List[str]:
        """선언된 depends_on 과 config 안의 OutputRef 를 합친 의존 목록."""
        deps: List[str] = list(self.depends_on)
        for ref in find_refs(self.config):
            if ref.resource not in deps:
                deps.append(ref.resource)
        return deps

    def resolve(self, outputs: Mapping[str, Mapping[str, Any]]) -> "ResourceSpec":
        """OutputRef 를 이미 적용된 리소스의 outputs 값으로 치환한 새 spec 을 돌려준다."""

        def _resolve(value: Any) -> Any:
            if isinstance(value, OutputRef):
                if value.resource not in outputs:
                    raise KeyError(f"{value} 를 해석할 수 없습니다: {value.resource} 가 아직 적용되지 않았습니다.")
                resource_outputs = outputs[value.resource]
                if value.key not in resource_outputs:
                    raise KeyError(f"{value} 를 해석할 수 없습니다: outputs 에 {value.key!r} 가 없습니다.")
                return resource_outputs[value.key]
            if isinstance(value, Mapping):
                return {k: _resolve(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_resolve(v) for v in value]
            return value

        return ResourceSpec(
            type=self.type,
            name=self.name,
            config=_resolve(self.config),
            depends_on=self.depends_on,
        )

    def config_dict(self) -> Dict[str, Any]:
        return thaw(self.config)


@dataclass(frozen=True)
class DeploymentPlan:
    """의존 대상이 항상 먼저 오도록 정렬된 ResourceSpec 목록."""

    deployment_id: str
    specs: Tuple[ResourceSpec, ...]

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.specs]

    def get(self, name: str) -> Optional[ResourceSpec]:
        for spec in self.specs:
            if spec.name == name:
                return spec
        return None


@dataclass
class DeploymentResult:
    """
    apply 결과.

    resources: 리소스 이름 -> 프로바이더 outputs
    outputs  : 호출자에게 돌려줄 최종 출력 (url 등 파생 값 포함)
    state    : apply 이후 저장소에 기록된 배포 상태 스냅샷
    orphans  : 상태에는 있으나 이번 계획에는 없는 리소스 이름
    """

    deployment_id: str
    resources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)
    orphans: List[str] = field(default_factory=list)


@dataclass
class TeardownResult:
    deployment_id: Optional[str]
    removed: List[str] = field(default_factory=list)
