"""
normalizer
----------

사용자 배포 입력을 검증/기본값 보정하고 ResourceSpec 목록으로 바꾼다.

- 배포 이름: 명시값 > 이전에 저장된 이름 > 무작위 생성
- 소스 위치: code 또는 현재 작업 디렉토리
- 함수(function) 리소스는 항상, API Gateway(apigateway) 리소스는 isDisabled 가 아니면 생성
"""

from __future__ import annotations

import os
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .config import AppConfig
from .errors import ValidationError
from .logging_utils import get_logger
from .models import OutputRef, ResourceSpec
from .packaging import SHIM_FILES, SHIM_HANDLER
from .state_store import validate_deployment_id


logger = get_logger(__name__)

ENTRY_POINT = "app.js"
DEFAULT_EXCLUDES = [".git/**", ".gitignore", ".serverless", ".DS_Store", ".fndeploy/**"]

FUNCTION_RESOURCE = "function"
GATEWAY_RESOURCE = "apigateway"

NAME_PREFIX = "fn-deploy-"
NAME_RANDOM_LENGTH = 6
_NAME_ALPHABET = string.ascii_lowercase + string.digits


def generate_name(length: int = NAME_RANDOM_LENGTH) -> str:
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(max(length, NAME_RANDOM_LENGTH)))
    return f"{NAME_PREFIX}{suffix}"


def resolve_name(config: AppConfig, previous_name: Optional[str] = None) -> str:
    name = config.name or previous_name or generate_name()
    return validate_deployment_id(name)


@dataclass
class NormalizedInputs:
    deployment_id: str
    code_uri: str
    config: AppConfig
    specs: List[ResourceSpec]

    def spec(self, name: str) -> Optional[ResourceSpec]:
        for s in self.specs:
            if s.name == name:
                return s
        return None


def _function_spec(name: str, code_uri: str, cfg: AppConfig) -> ResourceSpec:
    fc = cfg.function_conf
    include = list(cfg.include) + [p for p in SHIM_FILES if p not in cfg.include]
    exclude = list(cfg.exclude) + [p for p in DEFAULT_EXCLUDES if p not in cfg.exclude]

    conf: Dict[str, Any] = {
        "name": name,
        "region": cfg.region,
        "runtime": cfg.runtime,
        "handler": SHIM_HANDLER,
        "code_uri": code_uri,
        "include": include,
        "exclude": exclude,
        "timeout": fc.timeout,
        "memory_size": fc.memory_size,
        "description": cfg.from_client_remark,
    }
    if fc.environment:
        conf["environment"] = dict(fc.environment)
    if fc.vpc_config:
        conf["vpc_config"] = dict(fc.vpc_config)
    return ResourceSpec(type=FUNCTION_RESOURCE, name=FUNCTION_RESOURCE, config=conf)


def _gateway_spec(cfg: AppConfig) -> ResourceSpec:
    gw = cfg.apigateway_conf
    endpoint: Dict[str, Any] = {
        "path": "/",
        "method": "ANY",
        "function": {
            "is_integrated_response": True,
            "function_name": OutputRef(FUNCTION_RESOURCE, "name"),
            "namespace": OutputRef(FUNCTION_RESOURCE, "namespace"),
            "timeout": OutputRef(FUNCTION_RESOURCE, "timeout"),
        },
    }
    if gw.usage_plan:
        endpoint["usage_plan"] = dict(gw.usage_plan)
    if gw.auth:
        endpoint["auth"] = dict(gw.auth)

    conf: Dict[str, Any] = {
        "service_name": cfg.service_name,
        "service_id": cfg.service_id,
        "description": "fn-deploy-kit API Gateway",
        "region": cfg.region,
        "protocols": list(gw.protocols),
        "environment": gw.environment,
        "endpoints": [endpoint],
        "custom_domains": [dict(d) for d in gw.custom_domain],
        "remark": cfg.from_client_remark,
    }
    return ResourceSpec(
        type=GATEWAY_RESOURCE,
        name=GATEWAY_RESOURCE,
        config=conf,
        depends_on=(FUNCTION_RESOURCE,),
    )


def normalize(
    raw: Optional[Mapping[str, Any]],
    *,
    previous_name: Optional[str] = None,
    cwd: Optional[str] = None,
    strict: bool = True,
) -> NormalizedInputs:
    """
    Raises:
        ValidationError: 잘못된 설정 또는 소스 위치에 app.js 가 없는 경우
    """
    cfg = AppConfig.from_mapping(raw, strict=strict)
    base = os.path.abspath(cwd or os.getcwd())
    code_uri = os.path.abspath(os.path.join(base, cfg.code)) if cfg.code else base

    entry = os.path.join(code_uri, ENTRY_POINT)
    if not os.path.isfile(entry):
        raise ValidationError(f"{ENTRY_POINT} not found in {code_uri}")

    name = resolve_name(cfg, previous_name)
    logger.info("배포 이름: %s (code=%s, region=%s)", name, code_uri, cfg.region)

    specs = [_function_spec(name, code_uri, cfg)]
    if cfg.apigateway_conf.is_disabled:
        logger.info("apigatewayConf.isDisabled=true 이므로 API Gateway 를 만들지 않습니다.")
    else:
        specs.append(_gateway_spec(cfg))

    return NormalizedInputs(deployment_id=name, code_uri=code_uri, config=cfg, specs=specs)
