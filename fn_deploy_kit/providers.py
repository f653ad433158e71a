"""
providers
---------

리소스 프로바이더 인터페이스와 타입 태그 -> 프로바이더 레지스트리.

프로바이더 계약:
- apply(spec, prior_state) -> (outputs, new_state)
  같은 spec 과 직전 apply 가 만든 state 로 다시 호출해도 리소스를 중복 생성하지 않는다.
- remove(prior_state) -> None
  리소스가 이미 없으면 아무것도 하지 않고 성공한다.
- 실패는 ProviderError(transient=...) 로 알린다.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .models import ResourceSpec


Outputs = Dict[str, Any]
State = Dict[str, Any]
ApplyResult = Tuple[Outputs, State]


class ResourceProvider(ABC):
    resource_type: str = ""

    @abstractmethod
    def apply(self, spec: ResourceSpec, prior_state: Optional[State]) -> ApplyResult:
        ...

    @abstractmethod
    def remove(self, prior_state: State) -> None:
        ...


class ProviderRegistry:
    """리소스 타입 태그와 프로바이더 구현을 묶는다. 시작 시점에 한 번 구성한다."""

    def __init__(self, providers: Iterable[ResourceProvider] = ()) -> None:
        self._providers: Dict[str, ResourceProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ResourceProvider) -> None:
        tag = provider.resource_type
        if not tag:
            raise ValueError(f"resource_type 이 없는 프로바이더입니다: {provider!r}")
        if tag in self._providers:
            raise ValueError(f"이미 등록된 리소스 타입입니다: {tag}")
        self._providers[tag] = provider

    def get(self, resource_type: str) -> ResourceProvider:
        try:
            return self._providers[resource_type]
        except KeyError:
            raise ValidationError(
                f"등록되지 않은 리소스 타입입니다: {resource_type} "
                f"(등록된 타입: {', '.join(self.types()) or '(none)'})"
            ) from None

    def types(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._providers


def default_registry(tccli_path: str = "tccli", command_timeout: float = 300.0) -> ProviderRegistry:
    """SCF 함수 + API Gateway 프로바이더가 등록된 기본 레지스트리."""
    from .apigateway import ApiGatewayProvider
    from .scf_function import ScfFunctionProvider
    from .tccli import TccliClient

    client = TccliClient(tccli_path, timeout=command_timeout)
    return ProviderRegistry([ScfFunctionProvider(client), ApiGatewayProvider(client)])
