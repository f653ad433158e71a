from __future__ import annotations

import threading
from typing import Any, Dict, List, Mapping, Optional

from .config import AppConfig
from .engine import Orchestrator, default_protocol
from .errors import ValidationError
from .logging_utils import get_logger
from .models import DeploymentResult, TeardownResult
from .normalizer import FUNCTION_RESOURCE, GATEWAY_RESOURCE, NormalizedInputs, normalize, resolve_name
from .providers import ProviderRegistry
from .state_store import StateStore


logger = get_logger(__name__)

DEFAULT_INSTANCE = "default"


def gateway_url(gateway_outputs: Mapping[str, Any]) -> str:
    scheme = default_protocol(gateway_outputs.get("protocols") or [])
    return f"{scheme}://{gateway_outputs['sub_domain']}/{gateway_outputs['environment']}/"


def build_outputs(inputs: NormalizedInputs, result: DeploymentResult) -> Dict[str, Any]:
    """
    리소스별 outputs 로부터 호출자에게 보여줄 최종 출력을 만든다.
    """
    outputs: Dict[str, Any] = {
        "region": inputs.config.region,
        "function_name": result.resources[FUNCTION_RESOURCE]["name"],
    }
    gateway = result.resources.get(GATEWAY_RESOURCE)
    if gateway:
        outputs["api_gateway_service_id"] = gateway["service_id"]
        outputs["url"] = gateway_url(gateway)
        if gateway.get("custom_domains"):
            outputs["custom_domains"] = list(gateway["custom_domains"])
    return outputs


def _refuse_rename(store: StateStore, instance: str, deployment_id: str) -> None:
    """instance 가 가리키는 이전 배포가 남아 있는데 이름이 바뀌었으면 거부한다."""
    previous = store.get_alias(instance)
    if previous and previous != deployment_id and store.get(previous):
        raise ValidationError(
            f"instance '{instance}' 에 이미 다른 이름의 배포가 남아 있습니다: {previous} -> {deployment_id}. "
            "name 을 지우거나 되돌린 설정으로 먼저 remove 후 다시 배포하세요."
        )


def plan_all(
    raw: Optional[Mapping[str, Any]],
    *,
    store: StateStore,
    registry: ProviderRegistry,
    instance: str = DEFAULT_INSTANCE,
    strict: bool = True,
    cwd: Optional[str] = None,
) -> str:
    """
    현재 설정으로 어떤 리소스가 어떤 순서로 적용되는지
    요약 텍스트를 리턴한다. 실제 프로바이더 호출은 하지 않는다.
    """
    inputs = normalize(raw, previous_name=store.get_alias(instance), cwd=cwd, strict=strict)
    _refuse_rename(store, instance, inputs.deployment_id)
    plan = Orchestrator(registry, store).plan(inputs.deployment_id, inputs.specs)
    recorded = store.get(inputs.deployment_id)

    cfg = inputs.config
    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- deployment: {inputs.deployment_id}")
    lines.append(f"- region: {cfg.region}")
    lines.append(f"- code: {inputs.code_uri}")
    lines.append("")

    lines.append("## Config summary")
    lines.append(f"- runtime: {cfg.runtime}")
    lines.append(f"- timeout: {cfg.function_conf.timeout}")
    lines.append(f"- memory_size: {cfg.function_conf.memory_size}")
    lines.append(f"- apigateway: {'DISABLED' if cfg.apigateway_conf.is_disabled else 'ENABLED'}")
    if not cfg.apigateway_conf.is_disabled:
        lines.append(f"- protocols: {', '.join(cfg.apigateway_conf.protocols)}")
        lines.append(f"- environment: {cfg.apigateway_conf.environment}")
    lines.append("")

    lines.append("## Resources (apply order)")
    for index, spec in enumerate(plan, start=1):
        action = "UPDATE" if spec.name in recorded else "CREATE"
        deps = spec.dependencies()
        after = f" (after: {', '.join(deps)})" if deps else ""
        lines.append(f"{index}. {spec.name} [{spec.type}] {action}{after}")

    orphans = [name for name in recorded if plan.get(name) is None]
    if orphans:
        lines.append("")
        lines.append("## Recorded but not in config (removed on `remove`)")
        for name in orphans:
            lines.append(f"- {name}")

    return "\n".join(lines)


def deploy(
    raw: Optional[Mapping[str, Any]],
    *,
    store: StateStore,
    registry: ProviderRegistry,
    instance: str = DEFAULT_INSTANCE,
    cancel_event: Optional[threading.Event] = None,
    strict: bool = True,
    cwd: Optional[str] = None,
) -> DeploymentResult:
    """
    입력을 정규화하고 함수(+API Gateway)를 배포한다.

    배포 이름은 적용 전에 instance 에 기록해 두므로,
    중간에 실패해도 다시 실행하면 같은 이름으로 이어서 진행한다.
    이전 배포가 남아 있는 상태에서 name 이 바뀌면 ValidationError 로 거부한다.
    """
    inputs = normalize(raw, previous_name=store.get_alias(instance), cwd=cwd, strict=strict)
    _refuse_rename(store, instance, inputs.deployment_id)
    engine = Orchestrator(registry, store, cancel_event=cancel_event)
    plan = engine.plan(inputs.deployment_id, inputs.specs)

    store.set_alias(instance, inputs.deployment_id)
    result = engine.apply(plan)
    result.outputs = build_outputs(inputs, result)
    return result


def teardown(
    raw: Optional[Mapping[str, Any]],
    *,
    store: StateStore,
    registry: ProviderRegistry,
    instance: str = DEFAULT_INSTANCE,
    cancel_event: Optional[threading.Event] = None,
    strict: bool = True,
) -> TeardownResult:
    """
    기록된 상태를 기준으로 API Gateway -> 함수 순으로 삭제한다.

    Raises:
        TeardownErrorList: 일부 리소스 삭제 실패 (나머지는 모두 시도됨)
    """
    previous = store.get_alias(instance)
    cfg = AppConfig.from_mapping(raw, strict=strict)
    if not cfg.name and not previous:
        logger.info("삭제할 배포가 없습니다. (instance=%s)", instance)
        return TeardownResult(deployment_id=None)

    deployment_id = resolve_name(cfg, previous)
    engine = Orchestrator(registry, store, cancel_event=cancel_event)
    result = engine.remove(deployment_id)

    if previous == deployment_id:
        store.clear_alias(instance)
    return result


def summarize_deploy(result: DeploymentResult) -> str:
    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- deployment: {result.deployment_id}")
    lines.append("")

    lines.append("## Applied resources")
    for name in result.resources:
        lines.append(f"- {name}")

    lines.append("")
    lines.append("## Outputs")
    for key, value in result.outputs.items():
        lines.append(f"- {key}: {value}")

    if result.orphans:
        lines.append("")
        lines.append("## Orphaned resources (still live)")
        for name in result.orphans:
            lines.append(f"- {name}")
    return "\n".join(lines)


def summarize_teardown(result: TeardownResult) -> str:
    lines: List[str] = []
    lines.append("# Remove summary")
    lines.append(f"- deployment: {result.deployment_id or '(none)'}")
    lines.append("")
    lines.append("## Removed resources")
    if result.removed:
        for name in result.removed:
            lines.append(f"- {name}")
    else:
        lines.append("- (none)")
    return "\n".join(lines)
