"""
scf_function
------------

SCF(Serverless Cloud Function) 함수 배포를 담당하는 프로바이더.

함수가 없으면 생성하고, 있으면 코드와 설정을 갱신한다.
생성/갱신 후에는 함수가 Active 상태가 될 때까지 기다린다.
"""

from __future__ import annotations

import base64
import time
from typing import Any, Callable, Dict, List, Optional

from .errors import ProviderError
from .logging_utils import get_logger
from .models import ResourceSpec
from .packaging import build_archive
from .providers import ApplyResult, ResourceProvider, State
from .tccli import TccliClient


logger = get_logger(__name__)

DEFAULT_NAMESPACE = "default"
_TERMINAL_FAILED_SUFFIX = "Failed"


def _environment_param(env: Dict[str, str]) -> Dict[str, List[Dict[str, str]]]:
    return {"Variables": [{"Key": k, "Value": v} for k, v in sorted(env.items())]}


def _vpc_param(vpc: Dict[str, Any]) -> Dict[str, str]:
    return {
        "VpcId": str(vpc.get("vpcId") or vpc.get("VpcId") or ""),
        "SubnetId": str(vpc.get("subnetId") or vpc.get("SubnetId") or ""),
    }


class ScfFunctionProvider(ResourceProvider):
    resource_type = "function"

    def __init__(
        self,
        client: TccliClient,
        *,
        poll_interval: float = 2.0,
        max_wait: float = 180.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._sleep = sleep

    def _get(self, name: str, namespace: str, region: str) -> Optional[Dict[str, Any]]:
        try:
            return self._client.call(
                "scf",
                "GetFunction",
                {"FunctionName": name, "Namespace": namespace},
                region=region,
            )
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    def _wait_active(self, name: str, namespace: str, region: str) -> Dict[str, Any]:
        waited = 0.0
        while True:
            info = self._get(name, namespace, region)
            if info is None:
                raise ProviderError(f"SCF 함수가 생성 직후 조회되지 않습니다: {name}", transient=True)
            status = str(info.get("Status", ""))
            if status == "Active":
                return info
            if status.endswith(_TERMINAL_FAILED_SUFFIX):
                raise ProviderError(
                    f"SCF 함수 상태가 {status} 입니다: {name} ({info.get('StatusDesc', '')})",
                    transient=False,
                )
            if waited >= self._max_wait:
                raise ProviderError(
                    f"SCF 함수가 {self._max_wait:.0f}초 안에 Active 가 되지 않았습니다: {name} (status={status})",
                    transient=True,
                )
            logger.debug("SCF 함수 상태 대기: %s status=%s", name, status)
            self._sleep(self._poll_interval)
            waited += self._poll_interval

    def apply(self, spec: ResourceSpec, prior_state: Optional[State]) -> ApplyResult:
        conf = spec.config_dict()
        name: str = conf["name"]
        region: str = conf["region"]
        namespace: str = conf.get("namespace") or DEFAULT_NAMESPACE

        zip_bytes = build_archive(conf["code_uri"], conf.get("include", []), conf.get("exclude", []))
        zip_b64 = base64.b64encode(zip_bytes).decode("ascii")

        settings: Dict[str, Any] = {
            "FunctionName": name,
            "Namespace": namespace,
            "Description": conf.get("description", ""),
            "MemorySize": conf["memory_size"],
            "Timeout": conf["timeout"],
            "Runtime": conf["runtime"],
        }
        if conf.get("environment"):
            settings["Environment"] = _environment_param(conf["environment"])
        if conf.get("vpc_config"):
            settings["VpcConfig"] = _vpc_param(conf["vpc_config"])

        existing = self._get(name, namespace, region)
        if existing is None:
            logger.info("SCF 함수 생성: %s (region=%s, runtime=%s)", name, region, conf["runtime"])
            params = dict(settings)
            params["Handler"] = conf["handler"]
            params["Code"] = {"ZipFile": zip_b64}
            self._client.call("scf", "CreateFunction", params, region=region)
            self._wait_active(name, namespace, region)
        else:
            logger.info("기존 SCF 함수 갱신: %s (region=%s)", name, region)
            self._wait_active(name, namespace, region)
            self._client.call(
                "scf",
                "UpdateFunctionCode",
                {
                    "FunctionName": name,
                    "Namespace": namespace,
                    "Handler": conf["handler"],
                    "ZipFile": zip_b64,
                },
                region=region,
            )
            self._wait_active(name, namespace, region)
            self._client.call("scf", "UpdateFunctionConfiguration", settings, region=region)
            self._wait_active(name, namespace, region)

        outputs = {
            "name": name,
            "namespace": namespace,
            "region": region,
            "runtime": conf["runtime"],
            "handler": conf["handler"],
            "memory_size": conf["memory_size"],
            "timeout": conf["timeout"],
        }
        state = {"name": name, "namespace": namespace, "region": region}
        return outputs, state

    def remove(self, prior_state: State) -> None:
        name = (prior_state or {}).get("name")
        if not name:
            logger.debug("삭제할 SCF 함수 정보가 없어 건너뜁니다.")
            return
        region = prior_state["region"]
        namespace = prior_state.get("namespace") or DEFAULT_NAMESPACE

        logger.info("SCF 함수 삭제: %s (region=%s)", name, region)
        try:
            self._client.call(
                "scf",
                "DeleteFunction",
                {"FunctionName": name, "Namespace": namespace},
                region=region,
            )
        except ProviderError as e:
            if e.is_not_found:
                logger.info("SCF 함수가 이미 없습니다: %s", name)
                return
            raise
