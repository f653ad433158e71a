"""
apigateway
----------

API Gateway 서비스/API 를 구성하고 SCF 함수에 연결하는 프로바이더.

- serviceId 가 주어지거나 이전 상태에 기록되어 있으면 기존 서비스를 재사용
- "/" ANY API 를 함수(통합 응답)에 연결
- usagePlan / customDomain 은 설정된 경우에만 처리
- 설정된 environment(release 등)로 서비스를 릴리스
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import ProviderError
from .logging_utils import get_logger
from .models import ResourceSpec
from .providers import ApplyResult, ResourceProvider, State
from .tccli import TccliClient


logger = get_logger(__name__)

DEFAULT_SERVICE_TIMEOUT = 15


def _is_gone(err: ProviderError) -> bool:
    return err.is_not_found or "NotExist" in (err.code or "")


def _result(resp: Dict[str, Any]) -> Dict[str, Any]:
    result = resp.get("Result")
    return result if isinstance(result, dict) else resp


def protocol_param(protocols: List[str]) -> str:
    """["http", "https"] -> "http&https" """
    normalized = sorted({p.lower() for p in protocols}) or ["http"]
    return "&".join(normalized)


class ApiGatewayProvider(ResourceProvider):
    resource_type = "apigateway"

    def __init__(self, client: TccliClient) -> None:
        self._client = client

    def _call(self, action: str, params: Dict[str, Any], region: str) -> Dict[str, Any]:
        return _result(self._client.call("apigateway", action, params, region=region))

    def _call_ignoring_gone(self, action: str, params: Dict[str, Any], region: str) -> None:
        try:
            self._call(action, params, region)
        except ProviderError as e:
            if not _is_gone(e):
                raise
            logger.info("이미 없는 리소스입니다 (%s): %s", action, params)

    # -----------------------------
    # service
    # -----------------------------
    def _describe_service(self, service_id: str, region: str) -> Optional[Dict[str, Any]]:
        try:
            return self._call("DescribeService", {"ServiceId": service_id}, region)
        except ProviderError as e:
            if _is_gone(e):
                return None
            raise

    def _ensure_service(self, conf: Dict[str, Any], prior: State) -> tuple[Dict[str, Any], bool]:
        region = conf["region"]
        protocol = protocol_param(conf["protocols"])
        service_id = conf.get("service_id") or prior.get("service_id")
        created = bool(prior.get("service_created")) and service_id == prior.get("service_id")

        if service_id:
            info = self._describe_service(service_id, region)
            if info is not None:
                logger.info("기존 API Gateway 서비스를 사용합니다: %s", service_id)
                if str(info.get("Protocol", "")) != protocol:
                    self._call(
                        "ModifyService",
                        {
                            "ServiceId": service_id,
                            "ServiceName": info.get("ServiceName") or conf.get("service_name") or service_id,
                            "ServiceDesc": conf.get("description", ""),
                            "Protocol": protocol,
                        },
                        region,
                    )
                    info["Protocol"] = protocol
                return info, created
            if conf.get("service_id"):
                raise ProviderError(
                    f"지정한 API Gateway 서비스를 찾을 수 없습니다: {service_id}", transient=False
                )
            logger.warning("기록된 API Gateway 서비스가 없어 새로 생성합니다: %s", service_id)

        service_name = conf.get("service_name") or "serverless"
        logger.info("API Gateway 서비스 생성: %s (protocol=%s)", service_name, protocol)
        info = self._call(
            "CreateService",
            {
                "ServiceName": service_name,
                "Protocol": protocol,
                "ServiceDesc": conf.get("description", ""),
                "NetTypes": ["OUTER"],
            },
            region,
        )
        if not info.get("ServiceId"):
            raise ProviderError(f"CreateService 응답에 ServiceId 가 없습니다: {info}", transient=False)
        return info, True

    # -----------------------------
    # api
    # -----------------------------
    def _api_params(self, service_id: str, endpoint: Dict[str, Any]) -> Dict[str, Any]:
        function = endpoint["function"]
        auth = endpoint.get("auth") or {}
        return {
            "ServiceId": service_id,
            "ApiName": f"{function['function_name']}-{endpoint['method'].lower()}",
            "ApiDesc": "fn-deploy-kit endpoint",
            "Protocol": "HTTP",
            "AuthType": "SECRET" if auth else "NONE",
            "ServiceType": "SCF",
            # 백엔드 timeout 은 연결된 함수의 실행 timeout 을 따른다.
            "ServiceTimeout": int(function.get("timeout") or DEFAULT_SERVICE_TIMEOUT),
            "RequestConfig": {"Path": endpoint["path"], "Method": endpoint["method"]},
            "ServiceScfFunctionName": function["function_name"],
            "ServiceScfFunctionNamespace": function.get("namespace") or "default",
            "ServiceScfIsIntegratedResponse": bool(function.get("is_integrated_response", True)),
        }

    def _ensure_api(self, service_id: str, endpoint: Dict[str, Any], prior: State, region: str) -> str:
        params = self._api_params(service_id, endpoint)
        api_id = prior.get("api_id") if prior.get("service_id") == service_id else None

        if api_id:
            try:
                self._call("DescribeApi", {"ServiceId": service_id, "ApiId": api_id}, region)
            except ProviderError as e:
                if not _is_gone(e):
                    raise
                logger.warning("기록된 API 가 없어 새로 생성합니다: %s", api_id)
                api_id = None

        if api_id:
            logger.info("API 갱신: %s/%s %s %s", service_id, api_id, endpoint["method"], endpoint["path"])
            self._call("ModifyApi", dict(params, ApiId=api_id), region)
            return api_id

        logger.info("API 생성: %s %s %s", service_id, endpoint["method"], endpoint["path"])
        created = self._call("CreateApi", params, region)
        if not created.get("ApiId"):
            raise ProviderError(f"CreateApi 응답에 ApiId 가 없습니다: {created}", transient=False)
        return created["ApiId"]

    # -----------------------------
    # usage plan / custom domain
    # -----------------------------
    def _unbind_usage_plan(self, service_id: str, binding: Dict[str, Any], region: str) -> None:
        logger.info("사용량 계획 연결 해제: %s (%s)", binding["usage_plan_id"], binding["environment"])
        self._call_ignoring_gone(
            "UnBindEnvironment",
            {
                "UsagePlanIds": [binding["usage_plan_id"]],
                "BindType": "API",
                "Environment": binding["environment"],
                "ServiceId": binding.get("service_id") or service_id,
                "ApiIds": [binding["api_id"]],
            },
            region,
        )

    def _drop_usage_plan(self, service_id: str, prior: State, region: str) -> None:
        """이전 상태의 사용량 계획 연결을 풀고, 직접 만든 계획이면 삭제한다."""
        binding = prior.get("usage_plan_binding")
        if binding:
            self._unbind_usage_plan(service_id, binding, region)
        plan_id = prior.get("usage_plan_id")
        if plan_id and prior.get("usage_plan_created", True):
            logger.info("사용량 계획 삭제: %s", plan_id)
            self._call_ignoring_gone("DeleteUsagePlan", {"UsagePlanId": plan_id}, region)

    def _ensure_usage_plan(
        self,
        service_id: str,
        api_id: str,
        environment: str,
        usage_plan: Dict[str, Any],
        prior: State,
        state: State,
        region: str,
    ) -> None:
        params = {
            "UsagePlanName": usage_plan.get("usagePlanName") or f"{service_id}-plan",
            "UsagePlanDesc": usage_plan.get("usagePlanDesc", ""),
            "MaxRequestNum": int(usage_plan.get("maxRequestNum", -1)),
            "MaxRequestNumPreSec": int(usage_plan.get("maxRequestNumPreSec", -1)),
        }
        given_id = usage_plan.get("usagePlanId")
        if given_id and prior.get("usage_plan_id") not in (None, given_id):
            # 다른 계획으로 바뀌었으므로 이전 계획부터 정리한다.
            self._drop_usage_plan(service_id, prior, region)
            prior = {k: v for k, v in prior.items() if not k.startswith("usage_plan")}

        plan_id = given_id or prior.get("usage_plan_id")
        created = not given_id and bool(prior.get("usage_plan_created", True))
        if plan_id:
            self._call("ModifyUsagePlan", dict(params, UsagePlanId=plan_id), region)
        else:
            plan_id = self._call("CreateUsagePlan", params, region).get("UsagePlanId")
            if not plan_id:
                raise ProviderError("CreateUsagePlan 응답에 UsagePlanId 가 없습니다.", transient=False)
            created = True
        state["usage_plan_id"] = plan_id
        state["usage_plan_created"] = created

        bound = prior.get("usage_plan_binding") or {}
        binding = {
            "usage_plan_id": plan_id,
            "service_id": service_id,
            "api_id": api_id,
            "environment": environment,
        }
        if bound and bound != binding:
            self._unbind_usage_plan(service_id, bound, region)
            state.pop("usage_plan_binding", None)
        if bound != binding:
            self._call(
                "BindEnvironment",
                {
                    "UsagePlanIds": [plan_id],
                    "BindType": "API",
                    "Environment": environment,
                    "ServiceId": service_id,
                    "ApiIds": [api_id],
                },
                region,
            )
        state["usage_plan_binding"] = binding

    def _sync_custom_domains(
        self,
        service_id: str,
        domains: List[Dict[str, Any]],
        prior: State,
        state: State,
        region: str,
    ) -> List[str]:
        wanted = {d["domain"]: d for d in domains}
        bound = list(prior.get("custom_domains") or []) if prior.get("service_id") == service_id else []
        # 해제/연결할 때마다 state 를 갱신해 중간에 실패해도 실제 연결 상태가 남게 한다.
        current = list(bound)
        state["custom_domains"] = current

        for domain in bound:
            if domain not in wanted:
                logger.info("커스텀 도메인 해제: %s", domain)
                self._call_ignoring_gone(
                    "UnBindSubDomain", {"ServiceId": service_id, "SubDomain": domain}, region
                )
                current.remove(domain)

        for domain, d in wanted.items():
            if domain in bound:
                continue
            logger.info("커스텀 도메인 연결: %s", domain)
            params: Dict[str, Any] = {
                "ServiceId": service_id,
                "SubDomain": domain,
                "Protocol": protocol_param(d.get("protocols") or ["http"]),
                "NetType": "OUTER",
                "IsDefaultMapping": bool(d.get("isDefaultMapping", True)),
            }
            if d.get("certificateId"):
                params["CertificateId"] = d["certificateId"]
            self._call("BindSubDomain", params, region)
            current.append(domain)
        return list(wanted)

    # -----------------------------
    # ResourceProvider
    # -----------------------------
    def apply(self, spec: ResourceSpec, prior_state: Optional[State]) -> ApplyResult:
        conf = spec.config_dict()
        prior = dict(prior_state or {})
        region: str = conf["region"]
        environment: str = conf["environment"]
        endpoints = conf.get("endpoints") or []
        if len(endpoints) != 1:
            raise ProviderError(f"endpoint 는 정확히 1개여야 합니다: {len(endpoints)}개", transient=False)
        endpoint = endpoints[0]

        info, service_created = self._ensure_service(conf, prior)
        service_id = info["ServiceId"]

        # 서비스가 만들어진 뒤부터는 실패해도 지금까지의 state 를 partial_state 로 돌려준다.
        state: State = {
            "service_id": service_id,
            "service_created": service_created,
            "environment": environment,
            "region": region,
        }
        if prior.get("service_id") == service_id:
            for key in ("api_id", "usage_plan_id", "usage_plan_created", "usage_plan_binding", "custom_domains"):
                if key in prior:
                    state[key] = prior[key]

        try:
            api_id = self._ensure_api(service_id, endpoint, prior, region)
            state["api_id"] = api_id

            if endpoint.get("usage_plan"):
                self._ensure_usage_plan(
                    service_id, api_id, environment, endpoint["usage_plan"], prior, state, region
                )
            elif prior.get("usage_plan_id") or prior.get("usage_plan_binding"):
                self._drop_usage_plan(service_id, prior, region)
                for key in ("usage_plan_id", "usage_plan_created", "usage_plan_binding"):
                    state.pop(key, None)

            custom_domains = self._sync_custom_domains(
                service_id, conf.get("custom_domains") or [], prior, state, region
            )

            logger.info("API Gateway 서비스 릴리스: %s -> %s", service_id, environment)
            self._call(
                "ReleaseService",
                {
                    "ServiceId": service_id,
                    "EnvironmentName": environment,
                    "ReleaseDesc": conf.get("remark") or "fn-deploy-kit release",
                },
                region,
            )
        except ProviderError as e:
            e.partial_state = dict(state)
            raise

        outputs: Dict[str, Any] = {
            "service_id": service_id,
            "sub_domain": info.get("OuterSubDomain", ""),
            "environment": environment,
            "protocols": [p for p in str(info.get("Protocol") or protocol_param(conf["protocols"])).split("&")],
            "api_id": api_id,
        }
        if custom_domains:
            outputs["custom_domains"] = custom_domains
        return outputs, state

    def remove(self, prior_state: State) -> None:
        prior = prior_state or {}
        service_id = prior.get("service_id")
        if not service_id:
            logger.debug("삭제할 API Gateway 정보가 없어 건너뜁니다.")
            return
        region = prior["region"]
        environment = prior.get("environment", "release")
        api_id = prior.get("api_id")

        for domain in prior.get("custom_domains") or []:
            logger.info("커스텀 도메인 해제: %s", domain)
            self._call_ignoring_gone("UnBindSubDomain", {"ServiceId": service_id, "SubDomain": domain}, region)

        self._drop_usage_plan(service_id, prior, region)

        if prior.get("service_created"):
            logger.info("API Gateway 릴리스 해제: %s (%s)", service_id, environment)
            self._call_ignoring_gone(
                "UnReleaseService", {"ServiceId": service_id, "EnvironmentName": environment}, region
            )

        if api_id:
            logger.info("API 삭제: %s/%s", service_id, api_id)
            self._call_ignoring_gone("DeleteApi", {"ServiceId": service_id, "ApiId": api_id}, region)

        if prior.get("service_created"):
            logger.info("API Gateway 서비스 삭제: %s", service_id)
            self._call_ignoring_gone("DeleteService", {"ServiceId": service_id}, region)
        else:
            logger.info("직접 지정한 서비스는 삭제하지 않습니다: %s", service_id)
