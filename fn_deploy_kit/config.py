from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ValidationError


ENV_FILES_DEFAULT_ORDER = [".env", ".env.local"]
CONFIG_FILE_DEFAULT = "fndeploy.yml"

DEFAULT_REGION = "ap-guangzhou"
DEFAULT_RUNTIME = "Nodejs8.9"
DEFAULT_TIMEOUT = 3
DEFAULT_MEMORY_SIZE = 128
DEFAULT_PROTOCOLS = ["http"]
DEFAULT_GATEWAY_ENVIRONMENT = "release"
DEFAULT_CLIENT_REMARK = "fn-deploy-kit"


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def load_config_file(path: str) -> Dict[str, Any]:
    """
    배포 입력 파일(YAML/JSON)을 읽어 dict 로 반환한다.
    파일이 없으면 빈 dict.
    """
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"설정 파일의 최상위는 매핑이어야 합니다: {path}")
    return data


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} 는 숫자여야 합니다: {raw!r}")


@dataclass
class DeploySettings:
    """도구 자체의 동작 설정. (배포 입력과는 별개로 환경변수에서 읽는다)"""

    state_backend: str = "local"  # local | gcs
    state_dir: str = ".fndeploy/state"
    state_bucket: Optional[str] = None
    state_prefix: str = "fndeploy"
    gcp_project_id: Optional[str] = None

    tccli_path: str = "tccli"
    command_timeout: float = 300.0
    lock_timeout: float = 60.0

    strict: bool = True
    retries: int = 0

    @classmethod
    def from_env(cls) -> "DeploySettings":
        backend = (os.getenv("FNDEPLOY_STATE_BACKEND") or "local").strip().lower()
        if backend not in {"local", "gcs"}:
            raise ValueError(
                f"FNDEPLOY_STATE_BACKEND 는 local 또는 gcs 여야 합니다: {backend!r}"
            )

        cfg = cls(
            state_backend=backend,
            state_dir=os.getenv("FNDEPLOY_STATE_DIR", ".fndeploy/state"),
            state_bucket=os.getenv("FNDEPLOY_STATE_BUCKET"),
            state_prefix=os.getenv("FNDEPLOY_STATE_PREFIX", "fndeploy"),
            gcp_project_id=os.getenv("FNDEPLOY_GCP_PROJECT"),
            tccli_path=os.getenv("FNDEPLOY_TCCLI", "tccli"),
            command_timeout=_get_number("FNDEPLOY_COMMAND_TIMEOUT", 300.0),
            lock_timeout=_get_number("FNDEPLOY_LOCK_TIMEOUT", 60.0),
            strict=_get_bool("FNDEPLOY_STRICT", True),
            retries=int(_get_number("FNDEPLOY_RETRIES", 0)),
        )

        if cfg.state_backend == "gcs" and not cfg.state_bucket:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: FNDEPLOY_STATE_BUCKET "
                "(FNDEPLOY_STATE_BACKEND=gcs)"
            )
        return cfg


# ---------------------------------------------
# 배포 입력(사용자 설정) 구조
# ---------------------------------------------

def _ensure_str(value: Any, key: str, *, optional: bool = True) -> Optional[str]:
    if value is None or value == "":
        if optional:
            return None
        raise ValidationError(f"{key} 는 필수입니다.")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ValidationError(f"{key} 는 문자열이어야 합니다: {value!r}")
    return value


def _ensure_str_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{key} 는 문자열 목록이어야 합니다: {value!r}")
    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{key} 의 항목은 문자열이어야 합니다: {item!r}")
        items.append(item)
    return items


def _ensure_mapping(value: Any, key: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{key} 는 매핑이어야 합니다: {value!r}")
    return dict(value)


def _ensure_positive_int(value: Any, key: str, default: int) -> int:
    if value is None or value == 0:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} 는 숫자여야 합니다: {value!r}")
    if value < 0:
        raise ValidationError(f"{key} 는 0 보다 커야 합니다: {value!r}")
    return int(value)


def _check_keys(raw: Mapping[str, Any], allowed: List[str], where: str, strict: bool) -> None:
    if not strict:
        return
    unknown = sorted(k for k in raw if k not in allowed)
    if unknown:
        raise ValidationError(f"{where} 에 알 수 없는 설정이 있습니다: {', '.join(unknown)}")


@dataclass
class FunctionConf:
    timeout: int = DEFAULT_TIMEOUT
    memory_size: int = DEFAULT_MEMORY_SIZE
    environment: Dict[str, str] = field(default_factory=dict)
    vpc_config: Optional[Dict[str, Any]] = None

    KEYS = ["timeout", "memorySize", "environment", "vpcConfig"]

    @classmethod
    def from_mapping(cls, raw: Any, *, strict: bool = True) -> "FunctionConf":
        data = _ensure_mapping(raw, "functionConf")
        _check_keys(data, cls.KEYS, "functionConf", strict)

        environment = _ensure_mapping(data.get("environment"), "functionConf.environment")
        # SCF 의 환경변수 형식({"variables": {...}})도 허용
        if set(environment) == {"variables"} and isinstance(environment["variables"], Mapping):
            environment = dict(environment["variables"])

        vpc = data.get("vpcConfig")
        return cls(
            timeout=_ensure_positive_int(data.get("timeout"), "functionConf.timeout", DEFAULT_TIMEOUT),
            memory_size=_ensure_positive_int(
                data.get("memorySize"), "functionConf.memorySize", DEFAULT_MEMORY_SIZE
            ),
            environment={str(k): str(v) for k, v in environment.items()},
            vpc_config=_ensure_mapping(vpc, "functionConf.vpcConfig") if vpc else None,
        )


@dataclass
class ApiGatewayConf:
    is_disabled: bool = False
    protocols: List[str] = field(default_factory=lambda: list(DEFAULT_PROTOCOLS))
    environment: str = DEFAULT_GATEWAY_ENVIRONMENT
    custom_domain: List[Dict[str, Any]] = field(default_factory=list)
    usage_plan: Optional[Dict[str, Any]] = None
    auth: Optional[Dict[str, Any]] = None

    KEYS = ["isDisabled", "protocols", "environment", "customDomain", "usagePlan", "auth"]
    ALLOWED_PROTOCOLS = {"http", "https"}
    ALLOWED_ENVIRONMENTS = {"release", "prepub", "test"}

    @classmethod
    def from_mapping(cls, raw: Any, *, strict: bool = True) -> "ApiGatewayConf":
        data = _ensure_mapping(raw, "apigatewayConf")
        _check_keys(data, cls.KEYS, "apigatewayConf", strict)

        protocols = [p.lower() for p in _ensure_str_list(data.get("protocols"), "apigatewayConf.protocols")]
        bad = [p for p in protocols if p not in cls.ALLOWED_PROTOCOLS]
        if bad:
            raise ValidationError(f"지원하지 않는 프로토콜입니다: {', '.join(bad)} (http | https)")

        environment = _ensure_str(data.get("environment"), "apigatewayConf.environment")
        if environment and environment not in cls.ALLOWED_ENVIRONMENTS:
            raise ValidationError(
                f"apigatewayConf.environment 는 {sorted(cls.ALLOWED_ENVIRONMENTS)} 중 하나여야 합니다: "
                f"{environment!r}"
            )

        domains = data.get("customDomain") or []
        if isinstance(domains, Mapping):
            domains = [domains]
        if not isinstance(domains, list):
            raise ValidationError(f"apigatewayConf.customDomain 은 목록이어야 합니다: {domains!r}")
        custom_domain = [_ensure_mapping(d, "apigatewayConf.customDomain[]") for d in domains]
        for d in custom_domain:
            if not d.get("domain"):
                raise ValidationError("apigatewayConf.customDomain 항목에는 domain 이 필요합니다.")

        usage_plan = data.get("usagePlan")
        auth = data.get("auth")
        return cls(
            is_disabled=bool(data.get("isDisabled", False)),
            protocols=protocols or list(DEFAULT_PROTOCOLS),
            environment=environment or DEFAULT_GATEWAY_ENVIRONMENT,
            custom_domain=custom_domain,
            usage_plan=_ensure_mapping(usage_plan, "apigatewayConf.usagePlan") if usage_plan else None,
            auth=_ensure_mapping(auth, "apigatewayConf.auth") if auth else None,
        )


@dataclass
class AppConfig:
    """
    사용자 배포 입력을 구조화한 것.

    strict 모드에서는 알 수 없는 키가 있으면 ValidationError 를 낸다.
    """

    name: Optional[str] = None
    code: Optional[str] = None
    region: str = DEFAULT_REGION
    runtime: str = DEFAULT_RUNTIME
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    service_name: Optional[str] = None
    service_id: Optional[str] = None
    from_client_remark: str = DEFAULT_CLIENT_REMARK
    function_conf: FunctionConf = field(default_factory=FunctionConf)
    apigateway_conf: ApiGatewayConf = field(default_factory=ApiGatewayConf)

    KEYS = [
        "name",
        "functionName",
        "code",
        "region",
        "runtime",
        "include",
        "exclude",
        "serviceName",
        "serviceId",
        "fromClientRemark",
        "functionConf",
        "apigatewayConf",
    ]

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], *, strict: bool = True) -> "AppConfig":
        data = _ensure_mapping(raw, "config")
        _check_keys(data, cls.KEYS, "config", strict)

        name = _ensure_str(data.get("name"), "name") or _ensure_str(
            data.get("functionName"), "functionName"
        )
        return cls(
            name=name,
            code=_ensure_str(data.get("code"), "code"),
            region=_ensure_str(data.get("region"), "region") or DEFAULT_REGION,
            runtime=_ensure_str(data.get("runtime"), "runtime") or DEFAULT_RUNTIME,
            include=_ensure_str_list(data.get("include"), "include"),
            exclude=_ensure_str_list(data.get("exclude"), "exclude"),
            service_name=_ensure_str(data.get("serviceName"), "serviceName"),
            service_id=_ensure_str(data.get("serviceId"), "serviceId"),
            from_client_remark=_ensure_str(data.get("fromClientRemark"), "fromClientRemark")
            or DEFAULT_CLIENT_REMARK,
            function_conf=FunctionConf.from_mapping(data.get("functionConf"), strict=strict),
            apigateway_conf=ApiGatewayConf.from_mapping(data.get("apigatewayConf"), strict=strict),
        )
